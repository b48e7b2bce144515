"""Request/response models: the contract between the service and clients."""

from pydantic import BaseModel, Field


class ExecuteRequest(BaseModel):
    """Body of POST /api/v1/agent/execute.

    model_name selects a configured model (default model when omitted).
    With wait=true the call blocks until the run ends and returns a
    RunResult; otherwise the run is started in the background and its
    outcome is broadcast to event subscribers.
    """

    query: str = Field(..., min_length=1)
    model_name: str | None = None
    timeout: float | None = Field(None, gt=0)
    wait: bool = False


class RunResult(BaseModel):
    """Outcome of one run."""

    ok: bool
    query: str
    model: str
    result: str | None = None
    error_kind: str | None = None
    error: str | None = None


class ToolExecuteRequest(BaseModel):
    tool_name: str = Field(..., min_length=1)
    input: str = ""
