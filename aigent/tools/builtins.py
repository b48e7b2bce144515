"""Built-in starter tools for the engine.

Add new tools by defining more ``@register`` / ``@tool`` functions here
(or in additional modules under ``aigent/tools/``).
"""

from __future__ import annotations

import math

from langchain_core.tools import tool

from aigent.tools import register

_MATH_NAMES = {
    "abs": abs,
    "round": round,
    "min": min,
    "max": max,
    "pow": pow,
    "sqrt": math.sqrt,
    "pi": math.pi,
    "e": math.e,
}


@register
@tool
def calculate(expression: str) -> str:
    """Evaluate a mathematical expression such as "2+2", "(10*5)/2" or "sqrt(16)"."""
    # Only allow safe math builtins.
    try:
        result = eval(expression, {"__builtins__": {}}, dict(_MATH_NAMES))  # noqa: S307
    except Exception as exc:
        raise ValueError(f"Cannot evaluate '{expression}': {exc}") from exc
    return f"{expression} = {result}"
