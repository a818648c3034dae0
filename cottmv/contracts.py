"""Wire contract for transcode progress events.

These are the objects pushed over the progress event stream, one JSON object per
`data:` frame. `complete` and `error` are terminal: nothing follows them.
"""

from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class _Event(BaseModel):
    model_config = ConfigDict(frozen=True)

    @property
    def is_terminal(self) -> bool:
        return False


class StatusEvent(_Event):
    event: Literal["status"] = "status"
    message: str
    percent: float | None = None


class ProgressUpdate(_Event):
    event: Literal["progress"] = "progress"
    percent: float = Field(ge=0, le=100)
    message: str
    eta: str | None = None


class HeartbeatEvent(_Event):
    event: Literal["heartbeat"] = "heartbeat"


class CompleteEvent(_Event):
    event: Literal["complete"] = "complete"
    output_path: str
    size_bytes: int

    @property
    def is_terminal(self) -> bool:
        return True


class ErrorEvent(_Event):
    event: Literal["error"] = "error"
    message: str

    @property
    def is_terminal(self) -> bool:
        return True


ProgressEvent = Annotated[
    StatusEvent | ProgressUpdate | HeartbeatEvent | CompleteEvent | ErrorEvent,
    Field(discriminator="event"),
]
TerminalEvent = CompleteEvent | ErrorEvent

progress_event_adapter: TypeAdapter[ProgressEvent] = TypeAdapter(ProgressEvent)


def encode_sse(event: ProgressEvent) -> str:
    """Render one event as a server-sent-events frame."""
    return f"data: {event.model_dump_json(exclude_none=True)}\n\n"
