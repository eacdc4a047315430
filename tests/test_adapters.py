# tests/test_adapters.py
"""Tests for the directory, sender and credential adapters in consult_dispatch/infra."""
from __future__ import annotations

import json

import pytest

from consult_dispatch.infra.responder_directory import (
    InMemoryResponderDirectory,
    Responder,
    load_seed_file,
)


# ============================================================================
# InMemoryResponderDirectory
# ============================================================================

class TestInMemoryDirectory:
    @pytest.mark.asyncio
    async def test_lookup_keeps_insertion_order(self, directory):
        candidates = await directory.lookup_candidates("en")
        assert [c.id for c in candidates] == ["doc-a", "doc-b", "doc-c"]
        assert candidates[0].address == "tok-a"
        assert candidates[0].name == "Dr. Adler"

    @pytest.mark.asyncio
    async def test_lookup_unknown_language(self, directory):
        assert await directory.lookup_candidates("fr") == []

    @pytest.mark.asyncio
    async def test_invalidate_removes_from_future_lookups(self, directory):
        await directory.invalidate_address("doc-b")

        assert directory.get("doc-b").push_token is None
        candidates = await directory.lookup_candidates("en")
        assert [c.id for c in candidates] == ["doc-a", "doc-c"]

    @pytest.mark.asyncio
    async def test_invalidate_unknown_is_noop(self, directory):
        await directory.invalidate_address("ghost")
        assert len(directory) == 4

    def test_update_unknown_raises(self, directory):
        with pytest.raises(KeyError):
            directory.update_token("ghost", "tok")
        with pytest.raises(KeyError):
            directory.set_available("ghost", False)

    @pytest.mark.asyncio
    async def test_replace_keeps_position(self):
        directory = InMemoryResponderDirectory([
            Responder(id="x", name="X", language="en", push_token="t1"),
            Responder(id="y", name="Y", language="en", push_token="t2"),
        ])
        directory.add(Responder(id="x", name="X2", language="en", push_token="t3"))

        candidates = await directory.lookup_candidates("en")
        assert [(c.id, c.address) for c in candidates] == [("x", "t3"), ("y", "t2")]


class TestSeedFile:
    def test_load(self, tmp_path):
        path = tmp_path / "doctors.json"
        path.write_text(json.dumps([
            {"id": "d1", "name": "Dr. One", "language": "en", "push_token": "tok-1"},
            {"id": 2, "name": "Dr. Two", "language": "he", "fcmToken": "tok-2", "is_available": False},
        ]))

        responders = load_seed_file(path)

        assert responders[0] == Responder(id="d1", name="Dr. One", language="en", push_token="tok-1")
        assert responders[1].id == "2"
        assert responders[1].push_token == "tok-2"
        assert responders[1].is_available is False

    def test_not_a_list(self, tmp_path):
        path = tmp_path / "doctors.json"
        path.write_text(json.dumps({"id": "d1"}))
        with pytest.raises(ValueError, match="JSON list"):
            load_seed_file(path)

    def test_missing_field(self, tmp_path):
        path = tmp_path / "doctors.json"
        path.write_text(json.dumps([{"id": "d1", "name": "Dr. One"}]))
        with pytest.raises(ValueError, match="#0"):
            load_seed_file(path)


# ============================================================================
# LogNotificationSender / backend selection
# ============================================================================

class TestLogSender:
    @pytest.mark.asyncio
    async def test_records_and_succeeds(self):
        from consult_dispatch.infra.notification_senders import LogNotificationSender

        sender = LogNotificationSender()
        result = await sender.send("tok-abcdefghij", {"type": "call", "requestId": "r1", "candidateId": "d1"})

        assert result.ok
        assert sender.sent[0].address == "tok-abcdefghij"
        assert sender.sent[0].payload["requestId"] == "r1"

    @pytest.mark.asyncio
    async def test_history_is_bounded(self):
        from consult_dispatch.infra.notification_senders import LogNotificationSender

        sender = LogNotificationSender(max_history=2)
        for i in range(5):
            await sender.send(f"tok-{i}", {"requestId": str(i)})

        assert [s.payload["requestId"] for s in sender.sent] == ["3", "4"]

    def test_backend_selection(self, monkeypatch):
        from consult_dispatch.config import settings
        from consult_dispatch.infra.fcm_sender import FcmNotificationSender
        from consult_dispatch.infra.notification_senders import (
            LogNotificationSender,
            get_notification_sender,
        )

        monkeypatch.setattr(settings, "notification_backend", "log")
        assert isinstance(get_notification_sender(), LogNotificationSender)

        monkeypatch.setattr(settings, "notification_backend", "fcm")
        assert isinstance(get_notification_sender(), FcmNotificationSender)


# ============================================================================
# HmacCredentialIssuer
# ============================================================================

class TestCredentials:
    def test_issue_and_verify(self):
        from consult_dispatch.infra.session_credentials import HmacCredentialIssuer

        issuer = HmacCredentialIssuer("k" * 40, ttl_seconds=60)
        credential = issuer.issue("consult-1", now=1000)

        assert credential.startswith("consult-1.1060.")
        assert issuer.verify_credential(credential, "consult-1", now=1030) == (True, None)

    @pytest.mark.asyncio
    async def test_port_method(self):
        from consult_dispatch.infra.session_credentials import HmacCredentialIssuer

        issuer = HmacCredentialIssuer("k" * 40)
        credential = await issuer.issue_credential("consult-2")
        assert issuer.verify_credential(credential, "consult-2")[0] is True

    def test_expired(self):
        from consult_dispatch.infra.session_credentials import HmacCredentialIssuer

        issuer = HmacCredentialIssuer("k" * 40, ttl_seconds=60)
        credential = issuer.issue("consult-1", now=1000)
        assert issuer.verify_credential(credential, "consult-1", now=2000) == (False, "Credential expired")

    def test_bound_to_session(self):
        from consult_dispatch.infra.session_credentials import HmacCredentialIssuer

        issuer = HmacCredentialIssuer("k" * 40)
        credential = issuer.issue("consult-1")
        ok, err = issuer.verify_credential(credential, "consult-2")
        assert not ok
        assert "another session" in err

    def test_wrong_key(self):
        from consult_dispatch.infra.session_credentials import HmacCredentialIssuer

        credential = HmacCredentialIssuer("a" * 40).issue("consult-1")
        ok, err = HmacCredentialIssuer("b" * 40).verify_credential(credential, "consult-1")
        assert not ok
        assert err == "Invalid signature"

    def test_malformed(self):
        from consult_dispatch.infra.session_credentials import HmacCredentialIssuer

        issuer = HmacCredentialIssuer("k" * 40)
        assert issuer.verify_credential("garbage", "consult-1") == (False, "Malformed credential")
        assert issuer.verify_credential("consult-1.soon.sig", "consult-1") == (False, "Malformed credential")

    def test_ephemeral_key_when_unset(self):
        from consult_dispatch.infra.session_credentials import HmacCredentialIssuer

        issuer = HmacCredentialIssuer(None)
        credential = issuer.issue("consult-1")
        assert issuer.verify_credential(credential, "consult-1")[0] is True
