"""
Submission integrity: request-id shape, per-attempt nonce, and at-most-once
execution of side effects keyed by (attempt, request id, operation).
"""
import hashlib
import hmac
import logging
import re
import secrets
from typing import Any, List, Optional

from constants import (
    CONTAINER,
    NONCE_BYTES,
    NONCE_PATTERN,
    REQUEST_ID_MAX_LENGTH,
    REQUEST_ID_MIN_LENGTH,
)
from database import BatchConflictError, BatchOperation, WriteConflictError, batch_create
from error_utils import IntegrityError, NotFoundError
from models import Attempt, IdempotencyRecord, SubmissionGate

logger = logging.getLogger(__name__)

OPERATION_SUBMIT = "submit"
OPERATION_PROCTOR = "proctor"

_NONCE_RE = re.compile(NONCE_PATTERN)


def issue_nonce() -> str:
    """New attempt nonce; stored once at attempt start and never rotated."""
    return secrets.token_urlsafe(NONCE_BYTES)


def idempotency_record_id(operation: str, request_id: str) -> str:
    digest = hashlib.sha256(request_id.encode("utf-8")).hexdigest()
    return f"idem-{operation}-{digest}"


def validate_request_id(request_id: Any) -> str:
    if not isinstance(request_id, str) or not request_id:
        raise IntegrityError("Missing request id")
    if not (REQUEST_ID_MIN_LENGTH <= len(request_id) <= REQUEST_ID_MAX_LENGTH):
        raise IntegrityError("Request id length out of bounds")
    return request_id


def verify_nonce(presented: Any, stored: Optional[str]) -> None:
    if not isinstance(presented, str) or not _NONCE_RE.match(presented):
        raise IntegrityError("Missing or malformed attempt nonce")
    if not stored:
        raise IntegrityError("Attempt has no integrity nonce")
    if not hmac.compare_digest(presented.encode("utf-8"), stored.encode("utf-8")):
        raise IntegrityError("Attempt nonce mismatch")


class IntegrityGuard:
    def __init__(self, db):
        self.db = db
        self.container = CONTAINER["ATTEMPTS"]

    async def _load_attempt(self, attempt_id: str) -> Attempt:
        doc = await self.db.read_item(self.container, attempt_id, attempt_id)
        if not doc:
            raise NotFoundError(f"Attempt {attempt_id} not found")
        return Attempt.model_validate(doc)

    def verify(self, attempt: Attempt, request_id: Any, presented_nonce: Any) -> str:
        """Reject bad request ids and nonces; returns the validated request id."""
        request_id = validate_request_id(request_id)
        verify_nonce(presented_nonce, attempt.integrity_nonce)
        return request_id

    async def is_replay(self, attempt_id: str, request_id: str, operation: str = OPERATION_SUBMIT) -> bool:
        record_id = idempotency_record_id(operation, request_id)
        return bool(await self.db.read_item(self.container, record_id, attempt_id))

    async def begin_submission(
        self,
        attempt_id: str,
        request_id: Any,
        presented_nonce: Any,
        operations: Optional[List[BatchOperation]] = None,
        operation: str = OPERATION_SUBMIT,
        attempt: Optional[Attempt] = None,
    ) -> SubmissionGate:
        """
        Validate the request and claim (attempt, request, operation) exactly once.

        The claim is committed in one transactional batch with the caller's
        side-effect operations, so either both land or neither does. A lost
        race on the claim is reported as a replay; a conflict on one of the
        caller's operations raises WriteConflictError for the caller to
        re-read and retry.
        """
        if attempt is None:
            attempt = await self._load_attempt(attempt_id)
        request_id = self.verify(attempt, request_id, presented_nonce)

        record_id = idempotency_record_id(operation, request_id)
        if await self.is_replay(attempt_id, request_id, operation):
            logger.info(f"Replay of {operation} for attempt {attempt_id}")
            return SubmissionGate(accept=True, replay=True)

        record = IdempotencyRecord(
            id=record_id,
            attempt_id=attempt_id,
            request_id=request_id,
            operation=operation,
        )

        if not operations:
            try:
                await self.db.create_item(self.container, record.to_document())
            except WriteConflictError:
                return SubmissionGate(accept=True, replay=True)
            return SubmissionGate(accept=True, replay=False)

        try:
            await self.db.execute_batch(
                self.container,
                [batch_create(record.to_document())] + list(operations),
                partition_key=attempt_id,
            )
        except BatchConflictError as e:
            if e.failed_index == 0:
                logger.info(f"Concurrent {operation} for attempt {attempt_id} won the claim; treating as replay")
                return SubmissionGate(accept=True, replay=True)
            raise
        return SubmissionGate(accept=True, replay=False)
