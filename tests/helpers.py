"""Fakes for the three engine backends and the event sink."""

from __future__ import annotations

import asyncio
import json
import re
from collections.abc import Callable

from aigent.broker import EventStatus
from aigent.errors import RetrievalError
from aigent.retrieval import SearchResult


class FakeModel:
    """Scripted model backend.

    ``responses`` is either a list consumed in order (an Exception item is
    raised instead of returned) or a callable mapping the prompt to a reply.
    """

    def __init__(self, responses: list | Callable[[str], str], delay: float = 0) -> None:
        self._responses = responses
        self.delay = delay
        self.prompts: list[str] = []

    async def generate(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.delay:
            await asyncio.sleep(self.delay)
        if callable(self._responses):
            reply = self._responses(prompt)
        else:
            reply = self._responses.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


class FakeRetriever:
    """Answers queries from a dict; unknown queries return nothing."""

    def __init__(self, answers: dict[str, list[SearchResult]] | None = None, fail: bool = False):
        self.answers = answers or {}
        self.fail = fail
        self.queries: list[tuple[str, int]] = []

    async def search(self, query: str, top_k: int) -> list[SearchResult]:
        self.queries.append((query, top_k))
        if self.fail:
            raise RetrievalError(f"index unavailable for {query!r}")
        return self.answers.get(query, [])[:top_k]


class RecordingBroker:
    """Stands in for Broker.publish and keeps every event."""

    def __init__(self) -> None:
        self.events: list[dict] = []

    def publish(self, status, message, payload=None, *, event_id=None, run_id=None) -> None:
        self.events.append(
            {
                "status": status,
                "message": message,
                "payload": payload,
                "id": event_id,
                "run_id": run_id,
            }
        )

    def keys(self) -> list[str]:
        return [e["id"].split(":", 1)[1] for e in self.events]

    def with_status(self, status: EventStatus) -> list[dict]:
        return [e for e in self.events if e["status"] == status]


def plan_json(thought: str, *steps: dict) -> str:
    return json.dumps({"thought": thought, "steps": list(steps)})


def tool_step(name: str, tool_input, should_continue: bool = False) -> dict:
    return {
        "action": "tool_call",
        "parameters": {"tool_name": name, "input": tool_input},
        "should_continue": should_continue,
    }


def reason_step(prompt: str, should_continue: bool = False) -> dict:
    return {"action": "reason", "parameters": {"prompt": prompt}, "should_continue": should_continue}


_REQUEST_LINE = re.compile(r"^Request: (.*)$", re.MULTILINE)


def requested_query(prompt: str) -> str:
    """The query a think/retry prompt asks about."""
    match = _REQUEST_LINE.search(prompt)
    return match.group(1) if match else ""


def is_planning_prompt(prompt: str) -> bool:
    return _REQUEST_LINE.search(prompt) is not None


