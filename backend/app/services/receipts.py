"""Helpers for commutative per-user writes (receipts, reactions)."""

from __future__ import annotations

import logging
from typing import Callable, TypeVar

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models import MessageReceipt

logger = logging.getLogger(__name__)

T = TypeVar("T")


def get_or_create_receipt(message_id: int, user_id: int, db: Session) -> MessageReceipt:
    stmt = select(MessageReceipt).where(
        MessageReceipt.message_id == message_id,
        MessageReceipt.user_id == user_id,
    )
    receipt = db.execute(stmt).scalar_one_or_none()
    if receipt is None:
        receipt = MessageReceipt(message_id=message_id, user_id=user_id)
        db.add(receipt)
    return receipt


def commit_idempotent(apply: Callable[[], T], db: Session, *, attempts: int = 2) -> T:
    """Run *apply* and commit, replaying it once if a concurrent writer won a unique key.

    *apply* must read current rows before writing so that the replay observes
    the row inserted by the other writer.
    """

    for attempt in range(1, attempts + 1):
        result = apply()
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            if attempt == attempts:
                raise
            logger.debug("Concurrent write detected, replaying (attempt %d)", attempt)
            continue
        return result
    raise RuntimeError("unreachable")  # pragma: no cover
