from __future__ import annotations

from contextlib import contextmanager
from typing import Callable, Iterator

from sqlalchemy.orm import Session

_DEPTH_KEY = "backoffice.transaction_depth"
_AFTER_COMMIT_KEY = "backoffice.after_commit"


def transaction_depth(db: Session) -> int:
    return int(db.info.get(_DEPTH_KEY, 0))


def after_commit(db: Session, callback: Callable[[], None]) -> None:
    """Run ``callback`` once the outermost transaction block commits.

    Outside of any block the callback runs immediately. Callbacks queued by a
    block that rolls back are discarded.
    """
    if transaction_depth(db) == 0:
        callback()
        return
    db.info.setdefault(_AFTER_COMMIT_KEY, []).append(callback)


@contextmanager
def transaction(db: Session) -> Iterator[Session]:
    """Run a block inside one storage transaction.

    The outermost block commits on success and rolls back on any error.
    Nested blocks on the same session join the outer transaction and leave
    commit/rollback to it, so hooks that call other services never open a
    second transaction.
    """
    depth = transaction_depth(db)
    db.info[_DEPTH_KEY] = depth + 1
    try:
        yield db
        if depth == 0:
            db.commit()
    except BaseException:
        if depth == 0:
            db.info.pop(_AFTER_COMMIT_KEY, None)
            db.rollback()
        raise
    finally:
        db.info[_DEPTH_KEY] = depth
    if depth == 0:
        for callback in db.info.pop(_AFTER_COMMIT_KEY, []):
            callback()
