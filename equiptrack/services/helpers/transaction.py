"""
Transaction boundary for service operations.

Every core operation runs inside ``transaction(name)``.  Calls nest: an
operation invoked from inside another one joins the caller's transaction
and only flushes; the outermost block commits.  Any failure rolls back
the whole unit of work, so a multi-step operation is applied completely
or not at all.

Store failures (``SQLAlchemyError``) are re-raised as ``PersistenceError``
carrying the step that was running, which callers mark with
``tx.step("...")``:

    with transaction("record_inspection_outcome") as tx:
        tx.step("update_equipment")
        ...
        tx.step("record_loss")
        ...
"""

import logging
from contextlib import contextmanager
from contextvars import ContextVar

from sqlalchemy.exc import SQLAlchemyError

from equiptrack.core.exceptions import PersistenceError
from equiptrack.models import db

logger = logging.getLogger(__name__)

_depth: ContextVar[int] = ContextVar("equiptrack_tx_depth", default=0)


class StepTracker:
    """Remembers the last step entered inside a transaction."""

    def __init__(self, operation: str):
        self.operation = operation
        self.current: str | None = None
        self.completed: list[str] = []

    def step(self, name: str) -> None:
        if self.current is not None:
            self.completed.append(self.current)
        self.current = name
        logger.debug("%s: step %s", self.operation, name)


@contextmanager
def transaction(operation: str):
    depth = _depth.get()
    token = _depth.set(depth + 1)
    tracker = StepTracker(operation)
    outermost = depth == 0
    try:
        yield tracker
        if outermost:
            tracker.step("commit")
            db.session.commit()
        else:
            db.session.flush()
    except SQLAlchemyError as exc:
        if outermost:
            db.session.rollback()
        logger.error(
            "%s failed at step %s: %s", operation, tracker.current, exc,
            extra={"event_type": "persistence_error"},
        )
        raise PersistenceError(operation, tracker.current, str(exc.__class__.__name__)) from exc
    except PersistenceError as exc:
        if not outermost:
            raise
        db.session.rollback()
        if exc.operation == operation:
            raise
        # Report the failure against the outer operation's step
        raise PersistenceError(
            operation, tracker.current, f"{exc.operation} failed at step '{exc.step}'",
        ) from exc
    except Exception:
        if outermost:
            db.session.rollback()
        raise
    finally:
        _depth.reset(token)
