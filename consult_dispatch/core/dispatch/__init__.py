"""
Dispatch core -- provider-agnostic call routing.

This package holds the per-request state machine that invites candidate
responders one at a time, the in-memory request store it owns, and the
ports (protocols) for the directory, notification sender and credential
issuer it talks to.

Canonical imports:
    from consult_dispatch.core.dispatch import DispatchEngine, Decision
    from consult_dispatch.core.dispatch.domain import Candidate, SendResult
    from consult_dispatch.core.dispatch.ports import NotificationSender
"""
from consult_dispatch.core.dispatch.domain import (  # noqa: F401
    AdvanceReason,
    Candidate,
    Decision,
    DispatchOutcome,
    DispatchRequest,
    DispatchStatus,
    DispatchTicket,
    SendFailureKind,
    SendResult,
    Watchdog,
)
from consult_dispatch.core.dispatch.errors import (  # noqa: F401
    DispatchError,
    DuplicateRequestError,
    InvalidRequestError,
    NoCandidatesError,
    RequestNotFoundError,
    ValidationError,
)
from consult_dispatch.core.dispatch.ports import (  # noqa: F401
    CredentialIssuer,
    NotificationSender,
    ResponderDirectory,
)
from consult_dispatch.core.dispatch.store import RequestStore  # noqa: F401
from consult_dispatch.core.dispatch.engine import DispatchEngine  # noqa: F401
