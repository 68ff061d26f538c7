"""Best-effort cascading delete of a subject and the records that reference it.

The dependent collections (attendance, history, payments for a patient) are
cleaned up first, concurrently, each attempt isolated from the others. The
primary record is deleted only once every dependent attempt has resolved,
whether it succeeded, failed or timed out. A patient without history rows is
a normal case, so dependent failures are logged and reported in the result
instead of aborting the delete.
"""
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from contextlib import contextmanager, nullcontext
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger("clinic_crm.cascade")
if not logger.handlers:
    logging.basicConfig(level=logging.INFO, format='[%(asctime)s] %(levelname)s %(name)s: %(message)s')


class CascadeDeleteError(Exception):
    """The primary record could not be deleted."""

    def __init__(self, message, result=None):
        super().__init__(message)
        self.result = result


class CascadeCancelled(Exception):
    pass


class CascadeTimeout(Exception):
    pass


@dataclass
class Outcome:
    ok: bool
    value: Any = None
    error: Optional[BaseException] = None

    @property
    def message(self):
        return str(self.error) if self.error is not None else ''

    def to_dict(self):
        result = {'ok': self.ok}
        if self.error is not None:
            result['error'] = self.message
        elif isinstance(self.value, (dict, list, str, int, float, bool)) or self.value is None:
            result['value'] = self.value
        return result


@dataclass
class CascadeResult:
    subject_id: str
    dependent_results: Dict[str, Outcome] = field(default_factory=dict)
    primary_result: Optional[Outcome] = None

    @property
    def ok(self):
        return self.primary_result is not None and self.primary_result.ok

    @property
    def failed_dependents(self) -> List[str]:
        return [kind for kind, outcome in self.dependent_results.items() if not outcome.ok]

    def raise_for_primary(self, label='subject'):
        if self.ok:
            return self
        error = self.primary_result.error if self.primary_result else None
        raise CascadeDeleteError(
            f"Failed to delete {label} and related records: {error}", result=self)

    def to_dict(self):
        return {
            'subject_id': self.subject_id,
            'dependents': {kind: outcome.to_dict() for kind, outcome in self.dependent_results.items()},
            'primary': self.primary_result.to_dict() if self.primary_result else None,
            'failed_dependents': self.failed_dependents,
        }


class SubjectLocks:
    """One lock per subject id so two deletes of the same subject run one after the other."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks = {}   # subject id -> [lock, holders]

    @contextmanager
    def hold(self, subject_id):
        key = str(subject_id)
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        entry[0].acquire()
        try:
            yield
        finally:
            entry[0].release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    def __len__(self):
        with self._guard:
            return len(self._locks)


subject_locks = SubjectLocks()


def _attempt(fn: Callable[[], Any]) -> Outcome:
    try:
        return Outcome(True, fn())
    except Exception as e:
        return Outcome(False, error=e)


def _timed_out(kind, subject_id, timeout):
    return Outcome(False, error=CascadeTimeout(f"Deleting {kind} for {subject_id} timed out after {timeout}s"))


def _run_dependents_sequentially(subject_id, deleters, timeout, cancel_event):
    results = {}
    for kind, deleter in deleters.items():
        if cancel_event is not None and cancel_event.is_set():
            results[kind] = Outcome(False, error=CascadeCancelled(f"Cancelled before deleting {kind}"))
            continue
        if timeout is None:
            results[kind] = _attempt(deleter)
            continue
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"cascade-{subject_id}-{kind}")
        try:
            results[kind] = executor.submit(_attempt, deleter).result(timeout=timeout)
        except FutureTimeout:
            results[kind] = _timed_out(kind, subject_id, timeout)
        finally:
            executor.shutdown(wait=False)
    return results


def _run_dependents_concurrently(subject_id, deleters, timeout):
    results = {}
    executor = ThreadPoolExecutor(max_workers=len(deleters),
                                  thread_name_prefix=f"cascade-{subject_id}")
    try:
        futures = {kind: executor.submit(_attempt, deleter) for kind, deleter in deleters.items()}
        for kind, future in futures.items():
            try:
                results[kind] = future.result(timeout=timeout)
            except FutureTimeout:
                future.cancel()
                results[kind] = _timed_out(kind, subject_id, timeout)
    finally:
        # A hung dependent must not hold up the primary delete
        executor.shutdown(wait=False)
    return results


def cascade_delete_subject(subject_id, dependent_deleters: Dict[str, Callable[[], Any]],
                           primary_deleter: Callable[[], Any], *, timeout=None, concurrent=True,
                           cancel_event: Optional[threading.Event] = None,
                           locks: Optional[SubjectLocks] = subject_locks) -> CascadeResult:
    """Delete every dependent collection of ``subject_id``, then the subject itself.

    ``dependent_deleters`` maps a kind (``"attendance"``) to a zero-argument
    callable; ``primary_deleter`` deletes the subject. ``timeout`` bounds each
    dependent call, concurrent or sequential. Setting ``cancel_event``
    before the primary phase skips the primary delete.

    Never raises for dependent failures; check ``result.ok`` or call
    ``result.raise_for_primary()``.
    """
    result = CascadeResult(subject_id=str(subject_id))
    lock_cm = locks.hold(subject_id) if locks is not None else nullcontext()

    with lock_cm:
        if dependent_deleters:
            if concurrent and not (cancel_event is not None and cancel_event.is_set()):
                result.dependent_results = _run_dependents_concurrently(subject_id, dependent_deleters, timeout)
            else:
                result.dependent_results = _run_dependents_sequentially(
                    subject_id, dependent_deleters, timeout, cancel_event)

        for kind in result.failed_dependents:
            logger.warning("Failed to delete %s records for %s: %s",
                           kind, subject_id, result.dependent_results[kind].message)

        if cancel_event is not None and cancel_event.is_set():
            result.primary_result = Outcome(False, error=CascadeCancelled(
                f"Delete of {subject_id} cancelled before removing the primary record"))
            logger.info("Cascade delete of %s cancelled", subject_id)
            return result

        result.primary_result = _attempt(primary_deleter)
        if not result.primary_result.ok:
            logger.error("Failed to delete %s: %s", subject_id, result.primary_result.message)

    return result
