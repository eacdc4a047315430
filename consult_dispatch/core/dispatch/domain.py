# consult_dispatch/core/dispatch/domain.py
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable, Optional


# ============================================================================
# ENUMS
# ============================================================================

class DispatchStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"  # Resolved-Accepted
    EXHAUSTED = "exhausted"  # Resolved-Exhausted

    @property
    def is_terminal(self) -> bool:
        return self is not DispatchStatus.PENDING


class AdvanceReason(str, Enum):
    TIMEOUT = "timeout"
    DECLINED = "declined"
    DELIVERY_FAILED = "delivery_failed"


class Decision(str, Enum):
    ACCEPT = "accept"
    DECLINE = "decline"


class SendFailureKind(str, Enum):
    STALE_ADDRESS = "stale_address"
    TRANSIENT = "transient"


# ============================================================================
# VALUE OBJECTS
# ============================================================================

@dataclass(frozen=True)
class Candidate:
    """Responder eligible for a request, as returned by the directory."""
    id: str
    name: str
    address: str  # push token
    language: Optional[str] = None


@dataclass(frozen=True)
class SendResult:
    """Outcome of a single delivery attempt."""
    ok: bool
    failure: Optional[SendFailureKind] = None
    detail: Optional[str] = None

    @classmethod
    def success(cls) -> "SendResult":
        return cls(ok=True)

    @classmethod
    def stale_address(cls, detail: str | None = None) -> "SendResult":
        return cls(ok=False, failure=SendFailureKind.STALE_ADDRESS, detail=detail)

    @classmethod
    def transient(cls, detail: str | None = None) -> "SendResult":
        return cls(ok=False, failure=SendFailureKind.TRANSIENT, detail=detail)


@dataclass(frozen=True)
class DispatchTicket:
    """Identifiers handed back to the requester when dispatch starts."""
    request_id: str
    session_id: str
    credential: str


@dataclass(frozen=True)
class DispatchOutcome:
    """Terminal outcome of a dispatch request, recorded before removal."""
    request_id: str
    status: DispatchStatus
    candidate_id: Optional[str]
    cycle_count: int
    attempts: int
    reason: str
    elapsed_seconds: float

    def to_view(self) -> dict:
        return {
            "request_id": self.request_id,
            "status": self.status.value,
            "candidate_id": self.candidate_id,
            "cycle_count": self.cycle_count,
            "attempts": self.attempts,
            "reason": self.reason,
            "elapsed_seconds": round(self.elapsed_seconds, 3),
        }


# ============================================================================
# WATCHDOG
# ============================================================================

@dataclass
class Watchdog:
    """
    Owned handle to the response timeout armed for one attempt.

    ``disarm()`` may be called any number of times, including after the
    timer already fired.  A callback that fired before the disarm still
    carries ``attempt`` so the engine can recognise it as stale.
    """
    attempt: int
    handle: Optional[asyncio.TimerHandle] = field(default=None, repr=False)

    @classmethod
    def arm(
        cls,
        loop: asyncio.AbstractEventLoop,
        delay: float,
        attempt: int,
        callback: Callable[[], None],
    ) -> "Watchdog":
        watchdog = cls(attempt=attempt)

        def _fire() -> None:
            watchdog.handle = None
            callback()

        watchdog.handle = loop.call_later(delay, _fire)
        return watchdog

    @property
    def armed(self) -> bool:
        return self.handle is not None

    def disarm(self) -> None:
        if self.handle is not None:
            self.handle.cancel()
            self.handle = None


# ============================================================================
# DISPATCH REQUEST
# ============================================================================

@dataclass
class DispatchRequest:
    """
    Mutable state of one consultation request.

    Only the dispatch engine mutates it, and only while holding the
    record's lock in the request store.
    """
    request_id: str
    candidates: tuple[Candidate, ...]
    session_id: str
    credential: str
    requester_id: str
    criterion: Optional[str] = None
    cursor: int = 0
    cycle_count: int = 0
    attempt: int = 0
    status: DispatchStatus = DispatchStatus.PENDING
    watchdog: Optional[Watchdog] = field(default=None, repr=False)
    created_at: float = field(default_factory=time.time)
    resolved_at: Optional[float] = None
    resolution_reason: Optional[str] = None

    @property
    def current_candidate(self) -> Candidate:
        return self.candidates[self.cursor]

    @property
    def watchdog_armed(self) -> bool:
        return self.watchdog is not None and self.watchdog.armed

    def disarm_watchdog(self) -> None:
        if self.watchdog is not None:
            self.watchdog.disarm()
            self.watchdog = None

    def snapshot(self) -> "DispatchRequest":
        """Detached copy without the watchdog handle (safe to hand out)."""
        return replace(self, watchdog=None)

    def to_view(self) -> dict:
        """Public view for observers; omits push addresses and credential."""
        candidate = self.current_candidate if 0 <= self.cursor < len(self.candidates) else None
        return {
            "request_id": self.request_id,
            "status": self.status.value,
            "criterion": self.criterion,
            "session_id": self.session_id,
            "requester_id": self.requester_id,
            "cursor": self.cursor,
            "cycle_count": self.cycle_count,
            "attempt": self.attempt,
            "candidate_count": len(self.candidates),
            "current_candidate": (
                {"id": candidate.id, "name": candidate.name} if candidate else None
            ),
            "watchdog_armed": self.watchdog_armed,
            "created_at": self.created_at,
        }
