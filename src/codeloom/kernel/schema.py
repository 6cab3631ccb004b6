from __future__ import annotations

import re
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field


# ```py / ```python, optional trailing text on the fence line, body, closing fence.
CODE_BLOCK_PATTERN = re.compile(r"```(?:python|py)[ \t]*\r?\n(.*?)```", re.DOTALL)


def extract_code_blocks(content: str) -> List[str]:
    """Return the fenced Python blocks of a message, in order of appearance."""
    return [match.group(1) for match in CODE_BLOCK_PATTERN.finditer(content)]


class Marker(str, Enum):
    SUCCESS = "✅"
    FAILURE = "❌"


class MessageEvent(BaseModel):
    """A chat message as seen by the engine, stripped of transport detail."""

    id: str
    author_id: str
    channel_id: str
    content: str = ""
    is_self: bool = False


class GatewayEventKind(str, Enum):
    READY = "ready"
    MESSAGE_CREATE = "message_create"
    MESSAGE_UPDATE = "message_update"
    MESSAGE_DELETE = "message_delete"


class GatewayEvent(BaseModel):
    kind: GatewayEventKind
    # None for READY; MESSAGE_DELETE carries only id and channel_id.
    message: Optional[MessageEvent] = None


class Fragment(BaseModel):
    """One trusted author's message, treated as a unit of source code."""

    id: str
    author_id: str
    channel_id: str
    content: str

    @property
    def code_blocks(self) -> List[str]:
        return extract_code_blocks(self.content)

    @classmethod
    def from_message(cls, message: MessageEvent) -> "Fragment":
        return cls(
            id=message.id,
            author_id=message.author_id,
            channel_id=message.channel_id,
            content=message.content,
        )


class OutcomeStatus(str, Enum):
    OK = "ok"
    FAILED = "failed"
    SKIPPED = "skipped"


class FragmentOutcome(BaseModel):
    fragment_id: str
    status: OutcomeStatus
    blocks_run: int = 0
    error: Optional[str] = None


class RefreshReport(BaseModel):
    """Ordered outcomes of one refresh cycle."""

    cycle: int
    outcomes: List[FragmentOutcome] = Field(default_factory=list)
    handler_count: int = 0

    def by_id(self, fragment_id: str) -> FragmentOutcome:
        for outcome in self.outcomes:
            if outcome.fragment_id == fragment_id:
                return outcome
        raise KeyError(fragment_id)

    @property
    def failed(self) -> List[str]:
        return [o.fragment_id for o in self.outcomes if o.status == OutcomeStatus.FAILED]


class ResolutionStatus(str, Enum):
    READY = "ready"
    NEEDS_RESTART = "needs_restart"
    INSTALL_FAILED = "install_failed"


class Resolution(BaseModel):
    """Tagged result of capability resolution."""

    name: str
    status: ResolutionStatus
    handle: Optional[Any] = Field(default=None, exclude=True)
    install_target: Optional[str] = None
    error: Optional[str] = None

    model_config = ConfigDict(arbitrary_types_allowed=True)

    @property
    def ready(self) -> bool:
        return self.status == ResolutionStatus.READY
