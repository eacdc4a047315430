# consult_dispatch/core/dispatch/ports.py
from __future__ import annotations
from typing import Protocol, Sequence
from consult_dispatch.core.dispatch.domain import Candidate, SendResult


class ResponderDirectory(Protocol):
    async def lookup_candidates(self, criterion: str) -> Sequence[Candidate]:
        """Eligible, currently available responders for the criterion (language)."""
        ...

    async def invalidate_address(self, candidate_id: str) -> None:
        """Forget the stored push address of a responder. Best-effort."""
        ...


class NotificationSender(Protocol):
    async def send(self, address: str, payload: dict[str, str]) -> SendResult:
        """
        One delivery attempt.

        Failures are reported through ``SendResult`` (stale address vs
        transient); an exception is treated as a transient failure.
        """
        ...


class CredentialIssuer(Protocol):
    async def issue_credential(self, session_id: str) -> str: ...
