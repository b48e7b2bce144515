"""Tavily web search tool.

Requires: TAVILY_API_KEY environment variable.
"""

from __future__ import annotations

import logging
import os

from langchain_core.tools import tool

from aigent.tools import register

logger = logging.getLogger(__name__)

_SNIPPET_CHARS = 300


@register
@tool
async def tavily_search(query: str) -> str:
    """Search the web using Tavily and return the top results as formatted text.

    Use this for real-time information, recent events, or any question that
    benefits from live web data.

    Args:
        query: The search query string.

    Returns:
        A formatted string with the top search results (title, URL, snippet).
    """
    from tavily import AsyncTavilyClient

    api_key = os.environ.get("TAVILY_API_KEY", "")
    if not api_key:
        raise RuntimeError("TAVILY_API_KEY environment variable is not set")

    client = AsyncTavilyClient(api_key=api_key)
    response = await client.search(query=query, max_results=5, search_depth="basic")
    results = response.get("results", [])
    if not results:
        logger.info(f"tavily_search: no results for {query!r}")
        return f"No results found for: {query}"

    lines = [f"Search results for: {query}\n"]
    for i, r in enumerate(results, 1):
        title = r.get("title", "Untitled")
        url = r.get("url", "")
        content = r.get("content", "").strip()
        snippet = content[:_SNIPPET_CHARS] + "..." if len(content) > _SNIPPET_CHARS else content
        lines.append(f"{i}. {title}\n   URL: {url}\n   {snippet}\n")

    return "\n".join(lines)
