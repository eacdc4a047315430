# consult_dispatch/core/dispatch/store.py
"""
In-memory store of in-flight dispatch requests.

Every record has its own ``asyncio.Lock``; there is no store-wide lock,
so different requests never wait on each other.  State is volatile and
lost on process restart.
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Iterable, Optional, TypeVar

from consult_dispatch.core.dispatch.domain import Candidate, DispatchRequest
from consult_dispatch.core.dispatch.errors import (
    DuplicateRequestError,
    RequestNotFoundError,
    ValidationError,
)

T = TypeVar("T")


class RequestStore:
    """Keyed container of ``DispatchRequest`` records with per-record locking."""

    def __init__(self) -> None:
        self._records: dict[str, DispatchRequest] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def create(
        self,
        request_id: str,
        candidates: Iterable[Candidate],
        session_id: str,
        credential: str,
        requester_id: str,
        *,
        criterion: str | None = None,
    ) -> DispatchRequest:
        if request_id in self._records:
            raise DuplicateRequestError(f"Request {request_id} already exists")

        candidates = tuple(candidates)
        if not candidates:
            raise ValidationError("A dispatch request needs at least one candidate")

        record = DispatchRequest(
            request_id=request_id,
            candidates=candidates,
            session_id=session_id,
            credential=credential,
            requester_id=requester_id,
            criterion=criterion,
        )
        self._records[request_id] = record
        self._locks[request_id] = asyncio.Lock()
        return record

    def get(self, request_id: str) -> DispatchRequest:
        record = self._records.get(request_id)
        if record is None:
            raise RequestNotFoundError()
        return record

    def find(self, request_id: str) -> Optional[DispatchRequest]:
        return self._records.get(request_id)

    def remove(self, request_id: str) -> None:
        self._records.pop(request_id, None)
        self._locks.pop(request_id, None)

    def clear(self) -> list[DispatchRequest]:
        records = list(self._records.values())
        self._records.clear()
        self._locks.clear()
        return records

    @asynccontextmanager
    async def locked(self, request_id: str) -> AsyncIterator[DispatchRequest]:
        """
        Hold the record's lock for the duration of the block.

        Raises ``RequestNotFoundError`` if the record is absent, including
        when it was removed while this caller was waiting for the lock.
        """
        lock = self._locks.get(request_id)
        if lock is None:
            raise RequestNotFoundError()

        async with lock:
            record = self._records.get(request_id)
            if record is None or self._locks.get(request_id) is not lock:
                raise RequestNotFoundError()
            yield record

    async def mutate(self, request_id: str, fn: Callable[[DispatchRequest], T]) -> T:
        """Apply ``fn`` to the record atomically with respect to other mutations."""
        async with self.locked(request_id) as record:
            return fn(record)

    def request_ids(self) -> list[str]:
        return list(self._records)

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._records
