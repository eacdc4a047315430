# consult_dispatch/infra/responder_directory.py
"""
In-memory responder directory.

Used in dev and tests, and in small deployments that load the roster
from a JSON seed file at startup.  Lookups return responders in
insertion order, skipping unavailable ones and those without a push
token.

Seed file format (list of objects):
    [{"id": "doc-1", "name": "Dr. Levi", "language": "he", "push_token": "..."}]
"""
from __future__ import annotations

import json
from dataclasses import dataclass, replace
from pathlib import Path

from consult_dispatch.core.dispatch.domain import Candidate
from consult_dispatch.infra.logging_config import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class Responder:
    """Directory entry for one responder."""
    id: str
    name: str
    language: str
    push_token: str | None = None
    is_available: bool = True

    def to_candidate(self) -> Candidate:
        return Candidate(
            id=self.id,
            name=self.name,
            address=self.push_token or "",
            language=self.language,
        )


class InMemoryResponderDirectory:
    """Responder directory held in process memory."""

    def __init__(self, responders: list[Responder] | None = None) -> None:
        self._responders: dict[str, Responder] = {}
        for responder in responders or []:
            self.add(responder)

    def add(self, responder: Responder) -> None:
        """Insert or replace a responder (keeps original position on replace)."""
        self._responders[responder.id] = responder

    def get(self, responder_id: str) -> Responder | None:
        return self._responders.get(responder_id)

    def set_available(self, responder_id: str, available: bool) -> None:
        responder = self._responders.get(responder_id)
        if responder is None:
            raise KeyError(responder_id)
        self._responders[responder_id] = replace(responder, is_available=available)

    def update_token(self, responder_id: str, push_token: str | None) -> None:
        responder = self._responders.get(responder_id)
        if responder is None:
            raise KeyError(responder_id)
        self._responders[responder_id] = replace(responder, push_token=push_token)

    async def lookup_candidates(self, criterion: str) -> list[Candidate]:
        language = criterion.strip().lower()
        return [
            r.to_candidate()
            for r in self._responders.values()
            if r.language.lower() == language and r.is_available and r.push_token
        ]

    async def invalidate_address(self, candidate_id: str) -> None:
        responder = self._responders.get(candidate_id)
        if responder is None:
            logger.debug(f"invalidate_address: unknown responder {candidate_id}")
            return
        self._responders[candidate_id] = replace(responder, push_token=None)
        logger.info(f"Push token cleared for responder {candidate_id}")

    def __len__(self) -> int:
        return len(self._responders)


def load_seed_file(path: str | Path) -> list[Responder]:
    """
    Parse a JSON roster.

    Raises:
        ValueError: file is not a JSON list or an entry lacks id/name/language
    """
    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(raw, list):
        raise ValueError(f"Responder seed file must contain a JSON list: {path}")

    responders: list[Responder] = []
    for i, item in enumerate(raw):
        try:
            responders.append(Responder(
                id=str(item["id"]),
                name=str(item["name"]),
                language=str(item["language"]),
                push_token=item.get("push_token") or item.get("fcmToken"),
                is_available=bool(item.get("is_available", True)),
            ))
        except (KeyError, TypeError) as exc:
            raise ValueError(f"Invalid responder entry #{i} in {path}: {exc}") from exc

    logger.info(f"Loaded {len(responders)} responder(s) from {path}")
    return responders
