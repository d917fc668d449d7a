"""
Idempotency Service
===================
Replays the stored response of a side-effecting request (submission,
resubmission, final-analysis dispatch) when a client retries it with the
same ``Idempotency-Key``. Without this a double click on "Submit" would
dispatch two backend jobs; the second one would then be refused as busy.

Records are scoped to (user, key). A key is bound to the request it first
answered: reusing it for another endpoint is a client error rather than a
silent replay of an unrelated response.

    cached = replay(key, user.id, endpoint, db)
    if cached:
        status_code, body = cached
        return JSONResponse(body, status_code=status_code)
    ...
    remember(key, user.id, endpoint, 202, body, db)
"""
from __future__ import annotations

import logging
from datetime import timedelta
from typing import Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from caseflow.core.config import settings
from caseflow.db.models import IdempotencyRecord
from caseflow.utils.exceptions import IdempotencyKeyReusedError
from caseflow.utils.helpers import utcnow

logger = logging.getLogger(__name__)

CachedResponse = Tuple[int, dict]


def _live_record(db: Session, key: str, user_id: str) -> Optional[IdempotencyRecord]:
    return (
        db.query(IdempotencyRecord)
        .filter(
            IdempotencyRecord.idempotency_key == key,
            IdempotencyRecord.user_id == user_id,
            IdempotencyRecord.expires_at > utcnow(),
        )
        .first()
    )


def replay(key: Optional[str], user_id: str, endpoint: str, db: Session) -> Optional[CachedResponse]:
    """(status_code, body) of the first answer to this key, or None."""
    if not key:
        return None

    row = _live_record(db, key, user_id)
    if row is None:
        return None
    if row.endpoint and row.endpoint != endpoint:
        logger.warning("idempotency_key_reused key=%s user=%s first=%s now=%s", key, user_id, row.endpoint, endpoint)
        raise IdempotencyKeyReusedError(key)

    logger.info("idempotency_hit key=%s user=%s endpoint=%s", key, user_id, endpoint)
    return row.status_code, row.response_body


def remember(
    key: Optional[str],
    user_id: str,
    endpoint: str,
    status_code: int,
    body: dict,
    db: Session,
) -> None:
    """Store the answer for ``key``. Concurrent writers: the first one wins."""
    if not key:
        return

    now = utcnow()
    db.add(
        IdempotencyRecord(
            idempotency_key=key,
            user_id=user_id,
            endpoint=endpoint,
            status_code=status_code,
            response_body=body,
            created_at=now,
            expires_at=now + timedelta(hours=settings.IDEMPOTENCY_TTL_HOURS),
        )
    )
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.debug("idempotency_duplicate_ignored key=%s user=%s", key, user_id)


def purge_expired(db: Session) -> int:
    """Delete expired records; run hourly by the scheduler."""
    deleted = (
        db.query(IdempotencyRecord)
        .filter(IdempotencyRecord.expires_at <= utcnow())
        .delete(synchronize_session=False)
    )
    db.commit()
    return deleted
