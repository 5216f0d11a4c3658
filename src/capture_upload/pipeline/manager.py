"""Upload session manager.

Owns every upload session's state machine::

    created -> validating -> requesting_grant -> transferring -> confirming -> completed
                                  |   ^               |   ^
                                  v   |               v   |
                                 retrying            retrying

``failed`` and ``cancelled`` are reachable from every non-terminal state.
``confirmation_failed`` is the terminal state for a transfer whose bytes
landed in storage but whose confirmation the broker did not record.

Each session runs as its own asyncio task. Callers interact through
``submit``, ``cancel`` and ``get_status``; every session produces exactly
one terminal outcome, delivered once through ``on_success`` or ``on_error``.
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Optional
from uuid import uuid4

from capture_upload.broker.base import GrantBroker
from capture_upload.broker.http import HttpGrantBroker
from capture_upload.broker.memory import InMemoryGrantBroker
from capture_upload.core.config import Settings
from capture_upload.core.logging import session_id_context
from capture_upload.exceptions import (
    ConfirmationError,
    ErrorKind,
    UploadCancelledError,
    UploadError,
    UploadValidationError,
)
from capture_upload.models.upload import (
    ProgressEvent,
    SessionSnapshot,
    UploadFailure,
    UploadOutcome,
    UploadRequest,
    UploadState,
    WriteGrant,
)
from capture_upload.pipeline.grant_client import GrantClient
from capture_upload.pipeline.progress import ProgressEstimator
from capture_upload.pipeline.retry import RetryController, default_retryable
from capture_upload.pipeline.session import UploadCallbacks, UploadSession
from capture_upload.pipeline.transfer import TransferEngine, TransferObserver
from capture_upload.pipeline.validator import UploadPolicy, compute_checksum, validate_request
from capture_upload.storage.base import ObjectWriter
from capture_upload.storage.http import HttpObjectWriter
from capture_upload.storage.memory import InMemoryObjectWriter
from capture_upload.storage.upload_store import UploadHistory, UploadRecord

logger = logging.getLogger(__name__)


class UploadSessionManager:
    """Coordinates validation, grants, transfer and confirmation per artifact."""

    def __init__(
        self,
        broker: GrantBroker,
        writer: ObjectWriter,
        *,
        policy: UploadPolicy,
        retry: Optional[RetryController] = None,
        multipart_threshold: int = 5 * 1024 * 1024,
        part_size: int = 5 * 1024 * 1024,
        max_concurrency: int = 4,
        retention_seconds: float = 5.0,
        history: Optional[UploadHistory] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.broker = broker
        self.writer = writer
        self.policy = policy
        self.retry = retry or RetryController()
        self.grant_client = GrantClient(broker)
        self.engine = TransferEngine(
            writer,
            self.grant_client,
            self.retry,
            multipart_threshold=multipart_threshold,
            part_size=part_size,
            max_concurrency=max_concurrency,
        )
        self.retention_seconds = retention_seconds
        self.history = history if history is not None else UploadHistory()
        self._clock = clock
        self._sessions: dict[str, UploadSession] = {}
        self._release_handles: dict[str, asyncio.TimerHandle] = {}

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        broker: Optional[GrantBroker] = None,
        writer: Optional[ObjectWriter] = None,
        **kwargs: Any,
    ) -> "UploadSessionManager":
        """Build a manager wired according to STORAGE_BACKEND."""
        backend = settings.STORAGE_BACKEND.strip().lower()
        if broker is None or writer is None:
            if backend == "memory":
                broker = broker or InMemoryGrantBroker()
                writer = writer or InMemoryObjectWriter()
            elif backend == "http":
                broker = broker or HttpGrantBroker(
                    settings.BROKER_BASE_URL, api_token=settings.BROKER_API_TOKEN
                )
                writer = writer or HttpObjectWriter(timeout=settings.REQUEST_TIMEOUT_SECONDS)
            else:
                raise ValueError(f"Unsupported storage backend: {backend}")

        kwargs.setdefault("policy", UploadPolicy.from_settings(settings))
        kwargs.setdefault("retry", RetryController.from_settings(settings))
        kwargs.setdefault(
            "history",
            UploadHistory(settings.HISTORY_MAX_ENTRIES, path=settings.HISTORY_PATH or None),
        )
        return cls(
            broker,
            writer,
            multipart_threshold=settings.multipart_threshold_bytes,
            part_size=settings.multipart_chunk_size_bytes,
            max_concurrency=settings.MULTIPART_MAX_CONCURRENCY,
            retention_seconds=settings.SESSION_RETENTION_SECONDS,
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def submit(self, request: UploadRequest, callbacks: Optional[UploadCallbacks] = None) -> str:
        """Start uploading ``request`` and return its session id.

        Must be called from a running event loop.
        """
        loop = asyncio.get_running_loop()
        session_id = str(uuid4())
        session = UploadSession(
            session_id=session_id,
            request=request,
            callbacks=callbacks or UploadCallbacks(),
        )
        session.done = loop.create_future()
        self._sessions[session_id] = session
        session.task = loop.create_task(self._run(session), name=f"upload-{session_id}")

        logger.info(
            "Upload submitted",
            extra={
                "session_id": session_id,
                "case_id": request.case_id,
                "kind": request.kind.value,
                "size_bytes": request.size_bytes,
                "content_type": request.content_type,
            },
        )
        return session_id

    def cancel(self, session_id: str) -> bool:
        """Request cancellation.

        Returns False when the session is unknown, already finished, already
        cancelling, or confirming (its bytes have already landed).
        """
        session = self._sessions.get(session_id)
        if session is None or session.is_terminal or session.cancel_requested:
            return False
        if session.state == UploadState.CONFIRMING:
            return False

        session.cancel_requested = True
        session.updated_at = datetime.now(timezone.utc)
        # A task that has not started yet would be dropped before _run can finalize it.
        if session.state != UploadState.CREATED and session.task is not None and not session.task.done():
            session.task.cancel()
        logger.info("Upload cancellation requested", extra={"session_id": session_id, "state": session.state.value})
        return True

    def get_status(self, session_id: str) -> Optional[SessionSnapshot]:
        session = self._sessions.get(session_id)
        return session.snapshot() if session is not None else None

    def active_sessions(self) -> list[SessionSnapshot]:
        return [s.snapshot() for s in self._sessions.values() if not s.is_terminal]

    async def wait(self, session_id: str) -> UploadOutcome:
        """Wait for the session's terminal outcome.

        Raises:
            KeyError: If the session is unknown or already released
        """
        session = self._sessions[session_id]
        return await asyncio.shield(session.done)

    async def delete_artifact(self, object_key: str, case_id: str) -> bool:
        """Delete a stored artifact and drop it from the upload history.

        Returns:
            True when a history record was removed

        Raises:
            GrantError: The broker refused or failed the deletion; history is kept
        """
        await self.grant_client.delete_object(object_key, case_id)
        return self.history.remove(object_key)

    async def close(self) -> None:
        """Cancel running sessions and release network resources."""
        tasks = []
        for session in list(self._sessions.values()):
            if session.task is not None and not session.task.done():
                self.cancel(session.session_id)
                tasks.append(session.task)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        for handle in self._release_handles.values():
            handle.cancel()
        self._release_handles.clear()
        await self.writer.aclose()
        await self.broker.aclose()

    async def __aenter__(self) -> "UploadSessionManager":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Session execution
    # ------------------------------------------------------------------

    async def _run(self, session: UploadSession) -> None:
        token = session_id_context.set(session.session_id)
        session.started_monotonic = self._clock()
        estimator = ProgressEstimator(
            session.total_bytes, session_id=session.session_id, clock=self._clock
        )
        try:
            try:
                outcome = await self._execute(session, estimator)
            except asyncio.CancelledError:
                session.cancel_requested = True
                outcome = self._failure_outcome(session, UploadCancelledError(), UploadState.CANCELLED)
            except UploadError as e:
                # Cancellation wins over whatever error the aborted operation raised
                if isinstance(e, UploadCancelledError) or session.cancel_requested:
                    outcome = self._failure_outcome(session, UploadCancelledError(), UploadState.CANCELLED)
                else:
                    outcome = self._failure_outcome(session, e, UploadState.FAILED)
            except Exception as e:
                logger.exception("Unexpected error during upload", extra={"session_id": session.session_id})
                error = UploadError(f"Unexpected error: {e}")
                error.attempts = max(session.attempts, 1)
                outcome = self._failure_outcome(session, error, UploadState.FAILED)
            self._finalize(session, outcome)
        finally:
            session_id_context.reset(token)

    async def _execute(self, session: UploadSession, estimator: ProgressEstimator) -> UploadOutcome:
        request = session.request
        if session.cancel_requested:
            raise UploadCancelledError()

        session.transition(UploadState.VALIDATING)
        violations = validate_request(request, self.policy)
        if violations:
            raise UploadValidationError(violations)
        checksum = compute_checksum(request.payload)
        self._emit_progress(session, estimator.record(0))

        multipart = self.engine.uses_multipart(request.size_bytes)
        session.transition(UploadState.REQUESTING_GRANT)

        async def request_grant(attempt: int) -> WriteGrant:
            self._begin_attempt(session, UploadState.REQUESTING_GRANT, attempt)
            return await self.grant_client.request_grant(request, multipart=multipart)

        grant, _ = await self.retry.run(
            request_grant,
            retryable=default_retryable,
            on_retry=lambda error, attempt, delay: session.transition(UploadState.RETRYING),
            is_cancelled=lambda: session.cancel_requested,
            description="Grant request",
        )
        session.grant = grant

        if session.cancel_requested:
            raise UploadCancelledError()
        session.transition(UploadState.TRANSFERRING)

        observer = TransferObserver(
            is_cancelled=lambda: session.cancel_requested,
            on_bytes=lambda sent: self._emit_progress(session, estimator.record(sent)),
            on_attempt=lambda attempt: self._begin_attempt(session, UploadState.TRANSFERRING, attempt),
            on_retry=lambda error, attempt, delay: session.transition(UploadState.RETRYING),
            on_grant=lambda new_grant: setattr(session, "grant", new_grant),
            on_part=session.parts.append,
        )
        result = await self.engine.transfer(request, grant, observer)

        # A cancellation racing with a finished transfer still wins
        if session.cancel_requested:
            raise UploadCancelledError()

        self._emit_progress(session, estimator.complete())
        session.transition(UploadState.CONFIRMING)
        try:
            await self.grant_client.confirm_write(result.grant, request.size_bytes, checksum)
        except ConfirmationError as e:
            logger.error(
                "Upload stored but confirmation failed",
                extra={"object_key": result.object_key, "error": e.message},
            )
            return self._outcome(
                session,
                success=False,
                state=UploadState.CONFIRMATION_FAILED,
                object_key=result.object_key,
                object_url=result.object_url,
                attempts=result.attempts,
                parts=result.parts,
                checksum=checksum,
                error=UploadFailure(
                    kind=ErrorKind.CONFIRMATION,
                    message=e.message,
                    attempts=e.attempts,
                    bytes_may_be_stored=True,
                ),
            )

        return self._outcome(
            session,
            success=True,
            state=UploadState.COMPLETED,
            object_key=result.object_key,
            object_url=result.object_url,
            attempts=result.attempts,
            parts=result.parts,
            checksum=checksum,
        )

    def _begin_attempt(self, session: UploadSession, state: UploadState, attempt: int) -> None:
        session.attempts = attempt
        session.transition(state)

    def _emit_progress(self, session: UploadSession, event: ProgressEvent) -> None:
        session.bytes_transferred = event.bytes_loaded
        _invoke(session.callbacks.on_progress, event, "on_progress")

    def _outcome(self, session: UploadSession, *, success: bool, state: UploadState, **fields: Any) -> UploadOutcome:
        return UploadOutcome(
            session_id=session.session_id,
            success=success,
            state=state,
            size_bytes=session.total_bytes,
            elapsed_seconds=round(self._clock() - session.started_monotonic, 3),
            **fields,
        )

    def _failure_outcome(self, session: UploadSession, error: UploadError, state: UploadState) -> UploadOutcome:
        attempts = error.attempts if error.kind != ErrorKind.CANCELLED else session.attempts
        return self._outcome(
            session,
            success=False,
            state=state,
            object_key=session.grant.object_key if session.grant else None,
            attempts=attempts,
            parts=list(session.parts),
            error=UploadFailure(
                kind=error.kind,
                message=error.message,
                attempts=attempts,
                bytes_may_be_stored=False,
                violations=getattr(error, "violations", []),
            ),
        )

    def _finalize(self, session: UploadSession, outcome: UploadOutcome) -> None:
        session.outcome = outcome
        session.transition(outcome.state)

        log_extra = {
            "session_id": session.session_id,
            "state": outcome.state.value,
            "object_key": outcome.object_key,
            "attempts": outcome.attempts,
            "elapsed_seconds": outcome.elapsed_seconds,
        }
        if outcome.success:
            logger.info("Upload completed", extra=log_extra)
            self.history.add(
                UploadRecord(
                    artifact_id=session.session_id,
                    case_id=session.request.case_id,
                    kind=session.request.kind.value,
                    file_name=session.request.file_name,
                    content_type=session.request.content_type,
                    object_key=outcome.object_key or "",
                    object_url=outcome.object_url or "",
                    size_bytes=outcome.size_bytes,
                    uploaded_at=datetime.now(timezone.utc),
                    upload_seconds=outcome.elapsed_seconds,
                    checksum=outcome.checksum,
                    tags=list(session.request.tags),
                )
            )
            _invoke(session.callbacks.on_success, outcome, "on_success")
        else:
            if outcome.state == UploadState.CANCELLED:
                logger.info("Upload cancelled", extra=log_extra)
            else:
                logger.error(
                    "Upload failed",
                    extra={**log_extra, "error_kind": outcome.error.kind.value, "error": outcome.error.message},
                )
                self.history.record_failure()
            _invoke(session.callbacks.on_error, outcome.error, "on_error")

        if session.done is not None and not session.done.done():
            session.done.set_result(outcome)

        loop = asyncio.get_running_loop()
        self._release_handles[session.session_id] = loop.call_later(
            self.retention_seconds, self._release, session.session_id
        )

    def _release(self, session_id: str) -> None:
        self._release_handles.pop(session_id, None)
        self._sessions.pop(session_id, None)


def _invoke(callback: Optional[Callable[[Any], None]], payload: Any, name: str) -> None:
    """Run an observer callback; its failures never change the session outcome."""
    if callback is None:
        return
    try:
        callback(payload)
    except Exception:
        logger.exception(f"Upload {name} callback raised", extra={"callback": name})
