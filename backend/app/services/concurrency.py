# Overview: Conditional updates and retry for concurrent workflow writes.

from __future__ import annotations

import time

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db


RETRYABLE = (OperationalError, StaleDataError)


def compare_and_swap(model, row_id: int, *, expected: dict, values: dict) -> bool:
    """
    UPDATE model SET values WHERE id = row_id AND every `expected` column matches.

    True when the row changed, False when it no longer matched (another
    writer moved it first). A None expectation means IS NULL.

    version_id is bumped in the same statement, so a copy of the row loaded
    before the swap fails its own flush with StaleDataError.
    """
    conditions = [model.id == row_id]
    for column, value in expected.items():
        attr = getattr(model, column)
        conditions.append(attr.is_(None) if value is None else attr == value)

    values = dict(values)
    if hasattr(model, "version_id"):
        values["version_id"] = model.version_id + 1

    stmt = update(model).where(*conditions).values(**values)
    result = db.session.execute(stmt.execution_options(synchronize_session=False))
    return result.rowcount == 1


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Call func(), rolling back and retrying on lock errors and stale versions.

    Waits backoff_base * 2**n between tries; the last failure propagates.
    Domain errors raised by func are never retried.
    """
    for attempt in range(1, attempts + 1):
        try:
            return func()
        except RETRYABLE as exc:
            db.session.rollback()
            if attempt == attempts:
                raise
            current_app.logger.warning(
                "Concurrent write conflict (attempt %s/%s): %s", attempt, attempts, type(exc).__name__
            )
            time.sleep(backoff_base * (2 ** (attempt - 1)))
