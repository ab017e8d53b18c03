# Overview: Per-year request number allocation (REQ-<year>-<seq>).

from __future__ import annotations

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import RequestSequence
from app.time_utils import current_year


REQUEST_NUMBER_PREFIX = "REQ"


def _allocated(year: int) -> int:
    current = (
        db.session.query(RequestSequence.next_number)
        .filter_by(year=year)
        .scalar()
    )
    return current - 1


def next_request_number(*, year: int | None = None, pad: int = 4) -> str:
    """
    Atomically allocate the next request number for a year.

    Increments the counter row with a single UPDATE so two concurrent
    creators never receive the same number. The first request of a year
    inserts the row inside a savepoint; losing that insert race falls back
    to the UPDATE path.

    Runs inside the caller's transaction: the number is only consumed if
    the caller commits.
    """
    year = year or current_year()

    stmt = (
        update(RequestSequence)
        .where(RequestSequence.year == year)
        .values(next_number=RequestSequence.next_number + 1)
        .execution_options(synchronize_session=False)
    )

    result = db.session.execute(stmt)
    if result.rowcount:
        seq = _allocated(year)
    else:
        try:
            with db.session.begin_nested():
                db.session.add(RequestSequence(year=year, next_number=2))
            seq = 1
        except IntegrityError:
            result = db.session.execute(stmt)
            if not result.rowcount:
                raise
            seq = _allocated(year)

    return f"{REQUEST_NUMBER_PREFIX}-{year}-{seq:0{pad}d}"
