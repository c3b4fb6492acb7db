# Overview: Service-layer helpers for row locking, retries and the mutation boundary.

from __future__ import annotations

import time

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..errors import ErrorResult
from ..extensions import db


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    version_id_col on the locked aggregates still catches lost updates there.
    """
    return query.with_for_update()


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (optimistic locking conflicts).
    """
    last_exc = None
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            last_exc = exc
            if attempt >= attempts - 1:
                raise
            time.sleep(backoff_base * (2 ** attempt))
    if last_exc:
        raise last_exc


def run_mutation(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Service boundary for union-returning mutations.

    - Typed business errors raised inside func roll the transaction back and
      are RETURNED (result-union member).
    - Anything else rolls back and propagates (generic 400s, LedgerIntegrityError).
    """
    try:
        return run_with_retry(func, attempts=attempts, backoff_base=backoff_base)
    except ErrorResult as err:
        db.session.rollback()
        return err
    except Exception:
        db.session.rollback()
        raise
