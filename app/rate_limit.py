"""Sliding-window counter for sensitive operations, kept in the shared database."""

import logging
from datetime import timedelta

from sqlalchemy.orm import Session

import models_sqlalchemy as models
from config import get_settings
from errors import RateLimited

logger = logging.getLogger(__name__)


def hit(db: Session, key: str, max_operations=None, window_seconds=None, now=None) -> int:
    """Record one operation for ``key``; raise RateLimited once the window is full.

    Returns the number of operations counted in the current window.
    """
    settings = get_settings()
    max_operations = max_operations or settings.rate_limit_max_operations
    window_seconds = window_seconds or settings.rate_limit_window_seconds
    now = now or models.utcnow()
    window_start = now - timedelta(seconds=window_seconds)

    db.query(models.RateLimitHit).filter(
        models.RateLimitHit.key == key,
        models.RateLimitHit.created_at < window_start,
    ).delete(synchronize_session=False)

    count = db.query(models.RateLimitHit).filter(models.RateLimitHit.key == key).count()
    if count >= max_operations:
        db.commit()
        logger.warning("Rate limit reached for %s", key)
        raise RateLimited("Too many sensitive operations. Please try again later.")

    db.add(models.RateLimitHit(key=key, created_at=now))
    db.commit()
    return count + 1
