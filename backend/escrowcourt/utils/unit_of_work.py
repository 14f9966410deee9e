from __future__ import annotations

from contextlib import contextmanager

from flask import current_app
from sqlalchemy import update

from escrowcourt.extensions import db

_DEPTH_KEY = "unit_of_work_depth"


def in_unit_of_work() -> bool:
    return int(db.session.info.get(_DEPTH_KEY, 0)) > 0


@contextmanager
def unit_of_work():
    """All-or-nothing block over the scoped session.

    Nested blocks join the outermost one: only the outermost commits, and any
    exception rolls back everything done so far and propagates.
    """
    session = db.session()
    depth = int(session.info.get(_DEPTH_KEY, 0))
    session.info[_DEPTH_KEY] = depth + 1
    try:
        yield session
        if depth == 0:
            session.commit()
    except Exception:
        if depth == 0:
            session.rollback()
            current_app.logger.debug("unit of work rolled back")
        raise
    finally:
        session.info[_DEPTH_KEY] = depth


def conditional_update(model, pk: int, where, values: dict) -> bool:
    """UPDATE one row only if ``where`` still holds; True when the row changed.

    Used as a compare-and-set so two units of work can never both act on the
    same state. The in-session instance is expired so later reads see the new row.
    """
    stmt = (
        update(model)
        .where(model.id == int(pk))
        .where(*where)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = db.session.execute(stmt)
    obj = db.session.identity_map.get(db.session.identity_key(model, int(pk)))
    if obj is not None:
        db.session.expire(obj)
    return int(result.rowcount or 0) == 1
