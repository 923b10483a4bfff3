"""Type definitions for ssewire - stream records, notifications and configuration."""

from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Dict, FrozenSet, Literal, Optional, Union

from pydantic import BaseModel, Field


DEFAULT_RETRY_MS = 3000


# ============================================================================
# Connection State
# ============================================================================

class ConnectionState(IntEnum):
    """Public readiness of an event source. Values match the browser API."""
    CONNECTING = 0
    OPEN = 1
    CLOSED = 2


class TerminalOutcome(str, Enum):
    """How a single connection attempt ended."""
    CLEAN_EOF = "clean_eof"
    NETWORK_ERROR = "network_error"
    FATAL_STATUS = "fatal_status"
    CANCELLED = "cancelled"

    @property
    def retryable(self) -> bool:
        return self in (TerminalOutcome.CLEAN_EOF, TerminalOutcome.NETWORK_ERROR)


# ============================================================================
# Parser Output
# ============================================================================

@dataclass(frozen=True)
class EventRecord:
    """One decoded event, emitted when a blank line closes it."""
    data: str
    type: str = "message"
    id: Optional[str] = None


@dataclass(frozen=True)
class RetryHint:
    """A ``retry:`` field, in milliseconds."""
    ms: int


ParserOutput = Union[EventRecord, RetryHint]


# ============================================================================
# Session Memory
# ============================================================================

@dataclass
class SessionMemory:
    """State that survives reconnects. Owned by the reconnection controller."""
    last_event_id: str = ""
    retry_ms: int = DEFAULT_RETRY_MS

    def record(self, event: EventRecord) -> None:
        if event.id is not None and "\0" not in event.id:
            self.last_event_id = event.id


# ============================================================================
# Notification Payloads
# ============================================================================

class OpenEvent(BaseModel):
    type: Literal["open"] = "open"


class MessageEvent(BaseModel):
    type: str = "message"
    data: str
    last_event_id: str = Field(default="", alias="lastEventId")
    origin: str = ""

    class Config:
        populate_by_name = True


class ErrorEvent(BaseModel):
    type: Literal["error"] = "error"
    message: str
    status_code: Optional[int] = Field(default=None, alias="statusCode")
    fatal: bool = False

    class Config:
        populate_by_name = True


Notification = Union[OpenEvent, MessageEvent, ErrorEvent]


# ============================================================================
# Configuration
# ============================================================================

class EventSourceConfig(BaseModel):
    """Configuration for event sources."""
    retry_ms: int = Field(default=DEFAULT_RETRY_MS, ge=0)
    min_retry_ms: int = Field(default=0, ge=0)
    max_retry_ms: Optional[int] = Field(default=None, ge=0)
    retry_statuses: FrozenSet[int] = frozenset()
    read_timeout: Optional[float] = None
    connect_timeout: float = 10.0
    headers: Dict[str, str] = Field(default_factory=dict)
    last_event_id: str = ""
    follow_redirects: bool = True

    class Config:
        extra = "forbid"

    def clamp_retry(self, ms: int) -> int:
        """Apply the configured bounds to a server-supplied retry hint."""
        ms = max(ms, self.min_retry_ms)
        if self.max_retry_ms is not None:
            ms = min(ms, self.max_retry_ms)
        return ms

    def new_memory(self) -> SessionMemory:
        return SessionMemory(last_event_id=self.last_event_id, retry_ms=self.retry_ms)
