# consult_dispatch/core/dispatch/engine.py
"""
Call-dispatch engine.

Routes a consultation request through its candidate list, one call
invitation at a time, until a candidate accepts or the list is exhausted.

Workflow per request:
    create → notify(cursor) → [accept | decline | timeout | delivery failure]
    decline / timeout / delivery failure → advance → notify(cursor + 1) ...

Concurrency model:
- All state changes of one record happen under that record's lock in the
  ``RequestStore``; no lock is held while talking to the sender or the
  directory.
- Every record carries an ``attempt`` number.  Watchdogs and in-flight
  deliveries remember the attempt they belong to; an event whose attempt
  no longer matches the record is stale and dropped.
- Decline, timeout and delivery failure all go through ``_advance_locked``.
"""
from __future__ import annotations

import asyncio
import inspect
import time
import uuid
from collections import deque
from typing import Any, Awaitable, Callable, Coroutine, Union

from consult_dispatch.core.dispatch.domain import (
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
from consult_dispatch.core.dispatch.errors import (
    InvalidRequestError,
    NoCandidatesError,
    RequestNotFoundError,
    ValidationError,
)
from consult_dispatch.core.dispatch.invitation import (
    DEFAULT_MESSAGE_TYPE,
    build_invitation_payload,
)
from consult_dispatch.core.dispatch.ports import (
    CredentialIssuer,
    NotificationSender,
    ResponderDirectory,
)
from consult_dispatch.core.dispatch.store import RequestStore
from consult_dispatch.infra.logging_config import LogContext, get_logger, mask_token
from consult_dispatch.infra.metrics import DispatchMetrics

logger = get_logger(__name__)

OutcomeListener = Callable[[DispatchOutcome], Union[None, Awaitable[None]]]


class DispatchEngine:
    """
    Per-request state machine over an in-memory ``RequestStore``.

    Usage:
        engine = DispatchEngine(directory, sender, credentials)
        ticket = await engine.create_and_dispatch("en", requester_id="patient-1")
        ...
        await engine.respond_to_call(ticket.request_id, Decision.ACCEPT)
        ...
        await engine.shutdown()
    """

    def __init__(
        self,
        directory: ResponderDirectory,
        sender: NotificationSender,
        credentials: CredentialIssuer,
        *,
        store: RequestStore | None = None,
        response_timeout: float = 30.0,
        max_extra_cycles: int = 1,
        message_type: str = DEFAULT_MESSAGE_TYPE,
        session_prefix: str = "consult",
        outcome_history: int = 256,
    ) -> None:
        self._directory = directory
        self._sender = sender
        self._credentials = credentials
        self._store = store or RequestStore()
        self._response_timeout = response_timeout
        self._max_extra_cycles = max(0, max_extra_cycles)
        self._message_type = message_type
        self._session_prefix = session_prefix
        self._outcomes: deque[DispatchOutcome] = deque(maxlen=outcome_history)
        self._listeners: list[OutcomeListener] = []
        self._tasks: set[asyncio.Task] = set()

    @classmethod
    def from_settings(
        cls,
        directory: ResponderDirectory,
        sender: NotificationSender,
        credentials: CredentialIssuer,
        settings: Any = None,
    ) -> "DispatchEngine":
        if settings is None:
            from consult_dispatch.config import settings
        return cls(
            directory,
            sender,
            credentials,
            response_timeout=settings.dispatch_response_timeout_seconds,
            max_extra_cycles=settings.dispatch_max_extra_cycles,
            message_type=settings.dispatch_message_type,
            session_prefix=settings.dispatch_session_prefix,
            outcome_history=settings.dispatch_outcome_history,
        )

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def create_and_dispatch(
        self,
        criterion: str | None,
        requester_id: str | None = None,
    ) -> DispatchTicket:
        """
        Start dispatching a new request.

        Returns as soon as the record exists; the first invitation is sent
        in the background.

        Raises:
            ValidationError: criterion missing or blank
            NoCandidatesError: directory returned nobody (no record created)
        """
        criterion = (criterion or "").strip()
        if not criterion:
            raise ValidationError("Language is required")

        candidates = list(await self._directory.lookup_candidates(criterion))
        if not candidates:
            DispatchMetrics.no_candidates(criterion)
            logger.info(f"No candidates available: criterion={criterion}")
            raise NoCandidatesError()

        session_id = f"{self._session_prefix}-{uuid.uuid4().hex}"
        credential = await self._credentials.issue_credential(session_id)

        request_id = uuid.uuid4().hex
        record = self._store.create(
            request_id,
            candidates,
            session_id,
            credential,
            requester_id or request_id,
            criterion=criterion,
        )
        DispatchMetrics.request_created(criterion)

        LogContext(logger, dispatch_id=request_id).info(
            f"Dispatch created: criterion={criterion}, candidates={len(record.candidates)}, "
            f"max_extra_cycles={self._max_extra_cycles}"
        )

        self._spawn(self.notify_current(request_id), name=f"notify:{request_id[:8]}")

        return DispatchTicket(
            request_id=request_id,
            session_id=session_id,
            credential=credential,
        )

    async def respond_to_call(
        self,
        request_id: str,
        decision: Decision | str,
        *,
        candidate_id: str | None = None,
    ) -> DispatchRequest:
        """
        Apply a candidate's answer.

        Returns a detached snapshot of the record after the transition.

        Raises:
            ValidationError: unknown decision value
            InvalidRequestError: request unknown, already resolved, or the
                answer comes from a candidate who is no longer invited
        """
        try:
            decision = Decision(decision)
        except ValueError:
            raise ValidationError(f"Unknown decision: {decision!r}") from None

        try:
            async with self._store.locked(request_id) as record:
                if record.status.is_terminal:
                    raise InvalidRequestError()

                if candidate_id is not None and candidate_id != record.current_candidate.id:
                    LogContext(logger, dispatch_id=request_id, candidate_id=candidate_id).info(
                        f"Ignoring stale response: decision={decision.value}, "
                        f"current={record.current_candidate.id}"
                    )
                    raise InvalidRequestError("Candidate is not currently invited")

                if decision is Decision.ACCEPT:
                    LogContext(
                        logger, dispatch_id=request_id, candidate_id=record.current_candidate.id,
                    ).info("Call accepted")
                    self._resolve(record, DispatchStatus.ACCEPTED, reason="accepted")
                else:
                    LogContext(
                        logger, dispatch_id=request_id, candidate_id=record.current_candidate.id,
                    ).info("Call declined, trying next candidate")
                    self._advance_locked(record, AdvanceReason.DECLINED)

                return record.snapshot()

        except RequestNotFoundError:
            raise InvalidRequestError() from None

    async def advance(
        self,
        request_id: str,
        reason: AdvanceReason,
        *,
        attempt: int | None = None,
    ) -> bool:
        """
        Move the request to its next candidate (or resolve it as exhausted).

        ``attempt`` pins the event to the attempt it was raised for; if the
        record has moved on since, the call is a no-op.

        Returns True if a transition happened.
        """
        try:
            async with self._store.locked(request_id) as record:
                if attempt is not None and record.attempt != attempt:
                    logger.debug(
                        f"Stale advance dropped: reason={reason.value}, "
                        f"event_attempt={attempt}, record_attempt={record.attempt}",
                        extra={"dispatch_id": request_id},
                    )
                    return False
                return self._advance_locked(record, reason)
        except RequestNotFoundError:
            return False

    async def notify_current(self, request_id: str) -> None:
        """
        Invite the candidate at the record's cursor.

        The send happens outside the record lock; its result is committed
        only if the record is still pending on the same attempt.
        """
        try:
            async with self._store.locked(request_id) as record:
                if record.status.is_terminal:
                    return
                if not 0 <= record.cursor < len(record.candidates):
                    logger.warning(
                        f"Cursor out of range: cursor={record.cursor}, "
                        f"candidates={len(record.candidates)}",
                        extra={"dispatch_id": request_id},
                    )
                    self._resolve(record, DispatchStatus.EXHAUSTED, reason="cursor_out_of_range")
                    return

                candidate = record.current_candidate
                attempt = record.attempt
                payload = build_invitation_payload(
                    record, candidate, message_type=self._message_type,
                )
        except RequestNotFoundError:
            return

        log_ctx = LogContext(logger, dispatch_id=request_id, candidate_id=candidate.id, attempt=attempt)
        log_ctx.info(f"Sending call invitation: to={mask_token(candidate.address)}")

        result = await self._deliver(candidate, payload, log_ctx)

        try:
            async with self._store.locked(request_id) as record:
                if record.status.is_terminal or record.attempt != attempt:
                    log_ctx.debug(
                        f"Delivery result dropped: ok={result.ok}, attempt={attempt}, "
                        f"record_attempt={record.attempt}"
                    )
                    return

                if result.ok:
                    DispatchMetrics.invitation_sent()
                    self._arm_watchdog(record)
                    return

                kind = result.failure or SendFailureKind.TRANSIENT
                DispatchMetrics.invitation_failed(kind.value)
                log_ctx.warning(f"Invitation not delivered: kind={kind.value}, detail={result.detail}")

                if kind is SendFailureKind.STALE_ADDRESS:
                    self._spawn(
                        self._invalidate_address(candidate),
                        name=f"invalidate:{candidate.id}",
                    )
                self._advance_locked(record, AdvanceReason.DELIVERY_FAILED)
        except RequestNotFoundError:
            return

    # ------------------------------------------------------------------
    # Observation / lifecycle
    # ------------------------------------------------------------------

    def get_request(self, request_id: str) -> DispatchRequest:
        return self._store.get(request_id)

    @property
    def store(self) -> RequestStore:
        return self._store

    @property
    def pending_count(self) -> int:
        return len(self._store)

    @property
    def response_timeout(self) -> float:
        return self._response_timeout

    @property
    def max_extra_cycles(self) -> int:
        return self._max_extra_cycles

    def add_outcome_listener(self, listener: OutcomeListener) -> None:
        self._listeners.append(listener)

    def recent_outcomes(self, limit: int | None = None) -> list[DispatchOutcome]:
        outcomes = list(self._outcomes)
        if limit is not None:
            outcomes = outcomes[-limit:]
        return outcomes

    def find_outcome(self, request_id: str) -> DispatchOutcome | None:
        for outcome in reversed(self._outcomes):
            if outcome.request_id == request_id:
                return outcome
        return None

    async def join(self) -> None:
        """Wait until no background task is in flight. Armed watchdogs are not waited for."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        """Disarm every watchdog, cancel background work and drop all records."""
        for record in self._store.clear():
            record.disarm_watchdog()

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        logger.info(f"Dispatch engine stopped: cancelled_tasks={len(tasks)}")

    # ------------------------------------------------------------------
    # Transitions (caller holds the record lock)
    # ------------------------------------------------------------------

    def _advance_locked(self, record: DispatchRequest, reason: AdvanceReason) -> bool:
        record.disarm_watchdog()

        if record.status.is_terminal:
            return False

        DispatchMetrics.advanced(reason.value)

        record.cursor = (record.cursor + 1) % len(record.candidates)
        if record.cursor == 0:
            record.cycle_count += 1
        record.attempt += 1

        if record.cycle_count > self._max_extra_cycles:
            LogContext(logger, dispatch_id=record.request_id).info(
                f"Candidates exhausted: reason={reason.value}, cycles={record.cycle_count}"
            )
            self._resolve(record, DispatchStatus.EXHAUSTED, reason=reason.value)
            return True

        LogContext(logger, dispatch_id=record.request_id).info(
            f"Advancing: reason={reason.value}, cursor={record.cursor}, "
            f"cycle={record.cycle_count}, attempt={record.attempt}"
        )
        self._spawn(
            self.notify_current(record.request_id),
            name=f"notify:{record.request_id[:8]}",
        )
        return True

    def _resolve(self, record: DispatchRequest, status: DispatchStatus, *, reason: str) -> None:
        record.disarm_watchdog()
        record.status = status
        record.resolved_at = time.time()
        record.resolution_reason = reason
        self._store.remove(record.request_id)

        outcome = DispatchOutcome(
            request_id=record.request_id,
            status=status,
            candidate_id=(
                record.current_candidate.id if status is DispatchStatus.ACCEPTED else None
            ),
            cycle_count=record.cycle_count,
            # an exhausting advance already bumped the attempt counter
            attempts=record.attempt if status is DispatchStatus.EXHAUSTED else record.attempt + 1,
            reason=reason,
            elapsed_seconds=record.resolved_at - record.created_at,
        )
        self._outcomes.append(outcome)
        DispatchMetrics.resolved(status.value, outcome.elapsed_seconds)

        LogContext(logger, dispatch_id=record.request_id, candidate_id=outcome.candidate_id).info(
            f"Dispatch resolved: status={status.value}, reason={reason}, "
            f"attempts={outcome.attempts}, elapsed={outcome.elapsed_seconds:.2f}s"
        )
        self._emit(outcome)

    def _arm_watchdog(self, record: DispatchRequest) -> None:
        record.disarm_watchdog()
        request_id = record.request_id
        attempt = record.attempt
        record.watchdog = Watchdog.arm(
            asyncio.get_running_loop(),
            self._response_timeout,
            attempt,
            lambda: self._on_watchdog_expired(request_id, attempt),
        )

    # ------------------------------------------------------------------
    # Background work
    # ------------------------------------------------------------------

    def _on_watchdog_expired(self, request_id: str, attempt: int) -> None:
        self._spawn(self._expire(request_id, attempt), name=f"timeout:{request_id[:8]}")

    async def _expire(self, request_id: str, attempt: int) -> None:
        logger.info(
            f"No answer within {self._response_timeout}s: attempt={attempt}",
            extra={"dispatch_id": request_id},
        )
        await self.advance(request_id, AdvanceReason.TIMEOUT, attempt=attempt)

    async def _deliver(
        self,
        candidate: Candidate,
        payload: dict[str, str],
        log_ctx: LogContext,
    ) -> SendResult:
        if not candidate.address:
            return SendResult.stale_address("candidate has no push address")

        with DispatchMetrics.track_send_time():
            try:
                return await self._sender.send(candidate.address, payload)
            except Exception as exc:
                log_ctx.error(
                    f"Sender raised: {exc.__class__.__name__}: {exc}", exc_info=True,
                )
                return SendResult.transient(f"{exc.__class__.__name__}: {exc}")

    async def _invalidate_address(self, candidate: Candidate) -> None:
        try:
            await self._directory.invalidate_address(candidate.id)
            DispatchMetrics.stale_address_invalidated(True)
            logger.info(
                f"Stale push address cleared: to={mask_token(candidate.address)}",
                extra={"candidate_id": candidate.id},
            )
        except Exception as exc:
            DispatchMetrics.stale_address_invalidated(False)
            logger.warning(
                f"Stale address cleanup failed: {exc.__class__.__name__}: {exc}",
                extra={"candidate_id": candidate.id},
            )

    def _emit(self, outcome: DispatchOutcome) -> None:
        for listener in self._listeners:
            try:
                result = listener(outcome)
                if inspect.isawaitable(result):
                    self._spawn(result, name=f"outcome:{outcome.request_id[:8]}")
            except Exception:
                logger.error(
                    "Outcome listener failed",
                    extra={"dispatch_id": outcome.request_id},
                    exc_info=True,
                )

    def _spawn(self, coro: Coroutine[Any, Any, Any] | Awaitable[Any], *, name: str | None = None) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        if name:
            task.set_name(name)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        """Drop the reference and log unexpected failures."""
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc:
            logger.error(
                f"Dispatch task {task.get_name()} failed: {exc}",
                exc_info=(type(exc), exc, exc.__traceback__),
            )
