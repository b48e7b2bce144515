"""Error taxonomy: every failure a run can surface to its caller.

Callers of ``Engine.execute`` get either the final answer or exactly one
``EngineError``. ``kind`` names the taxonomy entry and ``describe()``
renders the human-readable cause chain.
"""

from __future__ import annotations


class EngineError(Exception):
    """Base class for all engine failures."""

    kind = "EngineError"

    def cause_chain(self) -> list[str]:
        """Messages from this error down through its ``__cause__`` links."""
        chain: list[str] = []
        current: BaseException | None = self
        while current is not None:
            chain.append(str(current) or type(current).__name__)
            current = current.__cause__
        return chain

    def describe(self) -> str:
        return f"{self.kind}: " + " <- ".join(self.cause_chain())


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------


class ExtractionError(EngineError):
    """No decodable plan structure found in the model output."""

    kind = "ExtractionError"


class ValidationError(EngineError):
    """Plan decoded but semantically incomplete, unexecutable, or irrelevant."""

    kind = "ValidationError"

    def __init__(
        self,
        message: str,
        *,
        step_index: int | None = None,
        field: str | None = None,
    ) -> None:
        super().__init__(message)
        self.step_index = step_index
        self.field = field


class UnknownActionError(ValidationError):
    kind = "UnknownActionError"


class ParameterTypeError(ValidationError):
    """A step parameter holds a value of the wrong JSON type."""


class IrrelevantPlanError(ValidationError):
    """The plan's thought shares too few words with the query."""


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------


class BackendError(EngineError):
    """A model, tool or retrieval call failed."""

    kind = "BackendError"


class ModelError(BackendError):
    pass


class ToolNotFoundError(BackendError):
    pass


class ToolExecutionError(BackendError):
    pass


class RetrievalError(BackendError):
    pass


# ---------------------------------------------------------------------------
# Run termination
# ---------------------------------------------------------------------------


class RecoveryFailedError(EngineError):
    """A step failed and its recovery strategy failed too. Always fatal."""

    kind = "RecoveryFailedError"

    def __init__(
        self,
        step_number: int,
        original: BaseException,
        reason: BaseException | str,
    ) -> None:
        super().__init__(
            f"Step {step_number} failed: {original}; recovery failed: {reason}"
        )
        self.step_number = step_number
        self.original = original
        self.reason = reason


class IterationBudgetExceededError(EngineError):
    kind = "IterationBudgetExceededError"

    def __init__(self, max_iterations: int) -> None:
        super().__init__(f"Iteration budget exceeded (max_iterations={max_iterations})")
        self.max_iterations = max_iterations


class ExecutionTimeoutError(EngineError):
    """The run's deadline expired while a phase was still in flight."""

    kind = "TimeoutError"

    def __init__(self, timeout: float) -> None:
        super().__init__(f"Run timed out after {timeout:g}s")
        self.timeout = timeout


class BrokerClosedError(EngineError):
    """Raised to subscribers only; publishing never raises."""

    kind = "BrokerClosedError"
