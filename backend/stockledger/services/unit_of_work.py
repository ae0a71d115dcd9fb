# Overview: All-or-nothing transaction scope for ledger mutations, with post-commit events.

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Iterator
from uuid import uuid4

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..errors import Conflict, LedgerError, StoreFailure
from ..extensions import db
from .concurrency import begin_immediate


logger = logging.getLogger(__name__)


class UnitOfWork:
    """
    Collects domain events while a unit runs.

    Events are held in queue order. Passing a key deduplicates: a later emit
    with the same (signal, key) replaces the earlier payload but keeps its
    position, so one stock_changed per (branch, product) carries the final
    quantity.
    """

    def __init__(self, sender: str):
        self.sender = sender
        self._queued: dict[tuple, tuple[Any, dict]] = {}
        self._counter = 0
        self.sent: list[tuple[str, dict]] = []

    def emit(self, signal, key: Any = None, **payload) -> None:
        if key is None:
            self._counter += 1
            slot = (signal.name, "#", self._counter)
        else:
            slot = (signal.name, key)
        self._queued[slot] = (signal, payload)

    def retract(self, signal, key: Any) -> None:
        self._queued.pop((signal.name, key), None)

    @property
    def pending(self) -> list[tuple[str, dict]]:
        return [(signal.name, dict(payload)) for signal, payload in self._queued.values()]

    def discard(self) -> None:
        self._queued.clear()

    def dispatch(self) -> None:
        """Send queued events. A failing subscriber is logged and skipped."""
        queued = list(self._queued.values())
        self._queued.clear()
        for signal, payload in queued:
            event = dict(payload, event_id=str(uuid4()))
            self.sent.append((signal.name, event))
            for receiver in list(signal.receivers_for(self.sender)):
                try:
                    receiver(self.sender, **event)
                except Exception:
                    logger.exception(
                        "Subscriber %r failed for %s event %s",
                        receiver, signal.name, event["event_id"],
                    )
            logger.debug("Dispatched %s event %s", signal.name, event["event_id"])


@contextmanager
def unit_of_work(sender: str = "stockledger", *, immediate: bool = True) -> Iterator[UnitOfWork]:
    """
    Run the body as one database transaction.

    - entry: stray session state is rolled back; SQLite takes the write lock
    - normal exit: commit, then dispatch queued events
    - LedgerError: rollback and re-raise unchanged
    - IntegrityError: rollback, Conflict
    - OperationalError / StaleDataError: rollback, StoreFailure (retryable)

    Nothing is retried here; retry policy belongs to the caller.
    """
    db.session.rollback()
    if immediate:
        begin_immediate()

    uow = UnitOfWork(sender)
    try:
        yield uow
        db.session.commit()
    except LedgerError:
        db.session.rollback()
        uow.discard()
        raise
    except IntegrityError as exc:
        db.session.rollback()
        uow.discard()
        logger.warning("Unit of work rolled back on integrity error: %s", exc.orig)
        raise Conflict("Write conflicts with existing data", {"reason": str(exc.orig)}) from exc
    except (OperationalError, StaleDataError) as exc:
        db.session.rollback()
        uow.discard()
        logger.warning("Unit of work rolled back on storage failure: %s", exc)
        raise StoreFailure("Storage temporarily unavailable, retry the operation") from exc
    except Exception:
        db.session.rollback()
        uow.discard()
        raise

    logger.debug("Unit of work committed (%s)", sender)
    uow.dispatch()
