# consult_dispatch/core/dispatch/invitation.py
"""
Call-invitation payload sent to candidate devices.

The field names are a fixed contract with the candidate-side apps.
Push data messages only carry string values, so every field is a str.
"""
from __future__ import annotations

from consult_dispatch.core.dispatch.domain import Candidate, DispatchRequest

DEFAULT_MESSAGE_TYPE = "call"


def build_invitation_payload(
    record: DispatchRequest,
    candidate: Candidate,
    *,
    message_type: str = DEFAULT_MESSAGE_TYPE,
) -> dict[str, str]:
    return {
        "type": message_type,
        "requestId": record.request_id,
        "sessionId": record.session_id,
        # Older app builds join the RTC channel by this key
        "channelName": record.session_id,
        "credential": record.credential,
        "requesterId": record.requester_id,
        "callerName": record.requester_id,
        "candidateId": candidate.id,
        "candidateName": candidate.name,
    }
