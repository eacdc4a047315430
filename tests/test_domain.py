# tests/test_domain.py
"""Tests for dispatch domain objects, the watchdog and the invitation payload."""
from __future__ import annotations

import asyncio

import pytest

from consult_dispatch.core.dispatch import (
    Candidate,
    DispatchRequest,
    DispatchStatus,
    SendFailureKind,
    SendResult,
    Watchdog,
)
from consult_dispatch.core.dispatch.errors import (
    InvalidRequestError,
    NoCandidatesError,
    RequestNotFoundError,
)
from consult_dispatch.core.dispatch.invitation import build_invitation_payload


def _record(**overrides) -> DispatchRequest:
    fields = dict(
        request_id="req-1",
        candidates=(
            Candidate(id="doc-a", name="Dr. Adler", address="tok-a"),
            Candidate(id="doc-b", name="Dr. Brown", address="tok-b"),
        ),
        session_id="consult-abc",
        credential="cred-abc",
        requester_id="patient-1",
    )
    fields.update(overrides)
    return DispatchRequest(**fields)


# ============================================================================
# Value objects
# ============================================================================

class TestSendResult:
    def test_success(self):
        result = SendResult.success()
        assert result.ok
        assert result.failure is None

    def test_stale(self):
        result = SendResult.stale_address("UNREGISTERED")
        assert not result.ok
        assert result.failure is SendFailureKind.STALE_ADDRESS
        assert result.detail == "UNREGISTERED"

    def test_transient(self):
        assert SendResult.transient().failure is SendFailureKind.TRANSIENT


class TestStatus:
    def test_terminal(self):
        assert not DispatchStatus.PENDING.is_terminal
        assert DispatchStatus.ACCEPTED.is_terminal
        assert DispatchStatus.EXHAUSTED.is_terminal


class TestErrors:
    def test_status_codes(self):
        assert InvalidRequestError().status_code == 400
        assert InvalidRequestError().detail == "Invalid request ID"
        assert NoCandidatesError().status_code == 404
        assert RequestNotFoundError().status_code == 404

    def test_not_found_is_invalid_request(self):
        assert isinstance(RequestNotFoundError(), InvalidRequestError)


# ============================================================================
# DispatchRequest
# ============================================================================

class TestDispatchRequest:
    def test_current_candidate_follows_cursor(self):
        record = _record()
        assert record.current_candidate.id == "doc-a"
        record.cursor = 1
        assert record.current_candidate.id == "doc-b"

    def test_view_hides_addresses_and_credential(self):
        view = _record().to_view()
        assert view["current_candidate"] == {"id": "doc-a", "name": "Dr. Adler"}
        assert "credential" not in view
        assert "tok-a" not in str(view)

    def test_snapshot_is_detached(self):
        record = _record()
        copy = record.snapshot()
        record.cursor = 1
        assert copy.cursor == 0
        assert copy.watchdog is None


# ============================================================================
# Watchdog
# ============================================================================

class TestWatchdog:
    @pytest.mark.asyncio
    async def test_fires_after_delay(self):
        fired = asyncio.Event()
        watchdog = Watchdog.arm(asyncio.get_running_loop(), 0.01, 3, fired.set)

        assert watchdog.armed
        await asyncio.wait_for(fired.wait(), timeout=1)
        assert not watchdog.armed
        assert watchdog.attempt == 3

    @pytest.mark.asyncio
    async def test_disarm_prevents_firing(self):
        fired = []
        watchdog = Watchdog.arm(asyncio.get_running_loop(), 0.01, 0, lambda: fired.append(1))

        watchdog.disarm()
        watchdog.disarm()
        await asyncio.sleep(0.05)

        assert fired == []
        assert not watchdog.armed

    @pytest.mark.asyncio
    async def test_record_disarm_clears_watchdog(self):
        record = _record()
        record.watchdog = Watchdog.arm(asyncio.get_running_loop(), 10, 0, lambda: None)
        assert record.watchdog_armed

        record.disarm_watchdog()
        assert record.watchdog is None
        assert not record.watchdog_armed


# ============================================================================
# Invitation payload
# ============================================================================

class TestInvitationPayload:
    def test_fields(self):
        record = _record()
        payload = build_invitation_payload(record, record.candidates[1])

        assert payload == {
            "type": "call",
            "requestId": "req-1",
            "sessionId": "consult-abc",
            "channelName": "consult-abc",
            "credential": "cred-abc",
            "requesterId": "patient-1",
            "callerName": "patient-1",
            "candidateId": "doc-b",
            "candidateName": "Dr. Brown",
        }

    def test_custom_message_type(self):
        record = _record()
        payload = build_invitation_payload(record, record.candidates[0], message_type="consult_call")
        assert payload["type"] == "consult_call"

    def test_all_values_are_strings(self):
        record = _record()
        payload = build_invitation_payload(record, record.candidates[0])
        assert all(isinstance(v, str) for v in payload.values())
