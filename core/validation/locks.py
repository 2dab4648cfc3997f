"""
Per-subject write guard.

Within one process, at most one writer may hold a subject at a time; a
second writer does not wait, it fails ConcurrentModification and the caller
retries after re-reading. Across processes the optimistic version column on
ValidationSubject gives the same guarantee at flush time.

Operations take the guard before they read the subject and keep it until
they return, then commit their writes with commit_unit while still holding
it. Registry entries live only while some thread holds or is trying a guard.
"""
from __future__ import annotations

import threading
from contextlib import contextmanager

from sqlalchemy.orm.exc import StaleDataError

from models import db
from core.validation.errors import ConcurrentModification


class _Guard:
    __slots__ = ('lock', 'users')

    def __init__(self):
        self.lock = threading.Lock()
        self.users = 0


_registry_lock = threading.Lock()
_subject_locks: dict[int, _Guard] = {}


def _checkout(subject_id: int) -> _Guard:
    with _registry_lock:
        guard = _subject_locks.get(subject_id)
        if guard is None:
            guard = _Guard()
            _subject_locks[subject_id] = guard
        guard.users += 1
        return guard


def _checkin(subject_id: int, guard: _Guard) -> None:
    with _registry_lock:
        guard.users -= 1
        if guard.users == 0 and _subject_locks.get(subject_id) is guard:
            del _subject_locks[subject_id]


@contextmanager
def subject_guard(subject_id: int):
    """Hold the write guard for subject_id or raise ConcurrentModification."""
    guard = _checkout(subject_id)
    if not guard.lock.acquire(blocking=False):
        _checkin(subject_id, guard)
        raise ConcurrentModification(
            'Another decision is being recorded for this subject',
            subject_id=subject_id,
        )
    try:
        yield
    finally:
        guard.lock.release()
        _checkin(subject_id, guard)


@contextmanager
def commit_unit(subject_id: int):
    """Run the block and commit it as one unit. The caller holds the guard.

    Any error rolls the whole block back. A lost optimistic version race at
    flush or commit becomes ConcurrentModification.
    """
    try:
        yield
        db.session.commit()
    except StaleDataError:
        db.session.rollback()
        raise ConcurrentModification(
            'Subject was modified by another writer; re-read and retry',
            subject_id=subject_id,
        )
    except Exception:
        db.session.rollback()
        raise


def check_version(subject, expected_version: int | None) -> None:
    """Fail fast when the caller's view of the subject is out of date."""
    if expected_version is not None and subject.version != expected_version:
        raise ConcurrentModification(
            f'Subject is at version {subject.version}, caller expected {expected_version}',
            subject_id=subject.id,
        )


def is_guarded(subject_id: int) -> bool:
    """True while some writer holds the subject's guard."""
    with _registry_lock:
        guard = _subject_locks.get(subject_id)
        return guard is not None and guard.lock.locked()


def guard_count() -> int:
    """Number of subjects with a live registry entry."""
    with _registry_lock:
        return len(_subject_locks)
