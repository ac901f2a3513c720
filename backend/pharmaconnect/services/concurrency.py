# Overview: Service-layer transaction scope, row locking and retry helpers.

from __future__ import annotations

import time
from contextlib import contextmanager

from flask import current_app
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
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


class PostCommitHooks:
    """
    Side effects queued by a command and run only after its transaction
    commits. A failing hook is logged and skipped; it never reaches the
    caller and never affects the other hooks.
    """

    def __init__(self):
        self._hooks: list[tuple] = []

    def add(self, func, *args, **kwargs) -> None:
        self._hooks.append((func, args, kwargs))

    def __len__(self) -> int:
        return len(self._hooks)

    def run(self) -> None:
        hooks, self._hooks = self._hooks, []
        for func, args, kwargs in hooks:
            try:
                func(*args, **kwargs)
            except Exception:
                db.session.rollback()
                current_app.logger.exception(
                    "Post-commit hook %s failed", getattr(func, "__qualname__", repr(func))
                )


@contextmanager
def unit_of_work():
    """
    One transaction per command.

    Commits when the block exits normally, rolls back on any exception and
    re-raises it unchanged, then runs the post-commit hooks registered on the
    yielded PostCommitHooks.
    """
    hooks = PostCommitHooks()
    try:
        yield hooks
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    hooks.run()
