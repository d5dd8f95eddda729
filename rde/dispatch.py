"""Sub-call Dispatcher.

Issues flat (single-shot) and recursive (nested engine) sub-queries on behalf
of executing fragments.  Every dispatch is checked against the wall-clock
deadline, the depth ceiling and the tree-wide budget before any work starts.
Admitted calls each run on their own daemon thread behind a FIFO gate that
caps how many execute at once; results come back in submission order.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Callable, Sequence
from concurrent.futures import FIRST_COMPLETED, Future, wait
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any, TypeVar

from .errors import (
    BudgetExceeded,
    DepthExceeded,
    RDEError,
    SubcallFailed,
    SubcallTimeout,
    WallTimeExceeded,
    describe_error,
)

if TYPE_CHECKING:
    from .backends import LLMBackend
    from .context import ContextView
    from .trajectory import EngineStats, Trajectory

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Upper bound on how long the collector sleeps before re-checking timers.
_POLL_INTERVAL = 0.05

RecursiveRunner = Callable[
    [str, "str | ContextView | None", "str | None", "Deadline"], "Trajectory"
]


class SubcallKind(StrEnum):
    FLAT = "flat"
    RECURSIVE = "recursive"


class SubcallStatus(StrEnum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


@dataclass
class SubcallRecord:
    """One dispatched sub-query.

    ``depth`` is the depth of the invocation that issued the call; a
    recursive call runs its child engine at ``depth + 1``.
    """

    kind: SubcallKind
    depth: int
    input_ref: str
    model_override: str | None = None
    status: SubcallStatus = SubcallStatus.PENDING
    result: str | None = None
    error: BaseException | None = None
    started_at: float | None = None
    ended_at: float | None = None
    trajectory: Trajectory | None = None
    scope: Deadline | None = field(default=None, repr=False, compare=False)

    @property
    def done(self) -> bool:
        return self.status is not SubcallStatus.PENDING

    @property
    def duration(self) -> float | None:
        if self.started_at is None or self.ended_at is None:
            return None
        return self.ended_at - self.started_at

    def text(self) -> str:
        """Result text, or an ``[ERROR: ...]`` string for a failed slot."""
        if self.status is SubcallStatus.SUCCEEDED:
            return self.result or ""
        if self.error is not None:
            return f"[ERROR: {describe_error(self.error)}]"
        return "[ERROR: sub-call did not complete]"

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": str(self.kind),
            "depth": self.depth,
            "input_ref": self.input_ref,
            "model_override": self.model_override,
            "status": str(self.status),
            "result": self.result,
            "error": describe_error(self.error) if self.error is not None else None,
            "duration": self.duration,
            "trajectory": self.trajectory.to_dict() if self.trajectory is not None else None,
        }


class Deadline:
    """Wall-clock ceiling shared by a whole invocation tree.

    :meth:`child` gives a sub-call its own scope: same ceiling and start
    time, cancelled when the parent is, but cancellable on its own.
    """

    def __init__(
        self,
        max_wall_time: float | None,
        clock: Callable[[], float] = time.monotonic,
        *,
        parent: Deadline | None = None,
    ) -> None:
        self.max_wall_time = max_wall_time
        self._clock = clock
        self._started = clock() if parent is None else parent._started
        self._parent = parent
        self._cancelled = threading.Event()

    def child(self) -> Deadline:
        return Deadline(self.max_wall_time, self._clock, parent=self)

    @property
    def cancelled(self) -> bool:
        if self._cancelled.is_set():
            return True
        return self._parent is not None and self._parent.cancelled

    def cancel(self) -> None:
        self._cancelled.set()

    def elapsed(self) -> float:
        return self._clock() - self._started

    def remaining(self) -> float | None:
        """Seconds left, or ``None`` when there is no ceiling."""
        if self.max_wall_time is None:
            return None
        return max(0.0, self.max_wall_time - self.elapsed())

    def expired(self) -> bool:
        if self.cancelled:
            return True
        return self.max_wall_time is not None and self.elapsed() >= self.max_wall_time

    def bound(self, timeout: float | None) -> float | None:
        """Clamp *timeout* to the remaining wall time."""
        remaining = self.remaining()
        if remaining is None:
            return timeout
        if timeout is None:
            return remaining
        return min(timeout, remaining)


class SubcallBudget:
    """Tree-wide count of admitted sub-calls."""

    def __init__(self, limit: int | None) -> None:
        self.limit = limit
        self._used = 0
        self._lock = threading.Lock()

    @property
    def used(self) -> int:
        return self._used

    def acquire(self) -> None:
        with self._lock:
            if self.limit is not None and self._used >= self.limit:
                raise BudgetExceeded(f"sub-call budget of {self.limit} exhausted")
            self._used += 1


class _FifoGate:
    """Counting gate that admits waiters strictly in enqueue order."""

    def __init__(self, capacity: int) -> None:
        self.capacity = capacity
        self.peak = 0
        self._active = 0
        self._queue: deque[object] = deque()
        self._cond = threading.Condition()

    @property
    def active(self) -> int:
        return self._active

    def enqueue(self) -> object:
        ticket = object()
        with self._cond:
            self._queue.append(ticket)
        return ticket

    def wait(self, ticket: object, abandoned: Callable[[], bool]) -> bool:
        """Block until *ticket* is first in line and a slot is free."""
        with self._cond:
            while not (self._queue[0] is ticket and self._active < self.capacity):
                if abandoned():
                    self._queue.remove(ticket)
                    self._cond.notify_all()
                    return False
                self._cond.wait(_POLL_INTERVAL)
            self._queue.popleft()
            self._active += 1
            self.peak = max(self.peak, self._active)
            self._cond.notify_all()
            return True

    def release(self) -> None:
        with self._cond:
            self._active -= 1
            self._cond.notify_all()


def call_with_timeout(fn: Callable[[], T], timeout: float | None, *, name: str = "rde-call") -> T:
    """Run *fn* and give up after *timeout* seconds.

    With ``timeout=None`` the call runs inline.  Otherwise it runs on a
    daemon thread which is abandoned (not killed) when the timeout fires.

    Raises
    ------
    TimeoutError
        If *fn* did not finish in time.
    """
    if timeout is None:
        return fn()

    future: Future[T] = Future()

    def runner() -> None:
        future.set_running_or_notify_cancel()
        try:
            result = fn()
        except BaseException as e:  # noqa: BLE001 - re-raised by future.result()
            future.set_exception(e)
        else:
            future.set_result(result)

    threading.Thread(target=runner, name=name, daemon=True).start()
    return future.result(timeout=max(timeout, 0.0))


def _clip(text: str, limit: int = 60) -> str:
    text = text.replace("\n", " ")
    return text if len(text) <= limit else text[: limit - 3] + "..."


def _describe_input(prompt: str, context: str | ContextView | None = None) -> str:
    if context is None:
        return f"literal:{_clip(prompt)}"
    if isinstance(context, str):
        return f"literal:{_clip(context)}"
    return f"artifact:{context.id}"


class SubcallDispatcher:
    """Issues sub-queries for one invocation.

    Parameters
    ----------
    backend : LLMBackend
        Model client for flat sub-calls.
    model : str
        Default model for sub-calls (``model_override`` wins per call).
    depth : int
        Depth of the invocation that owns this dispatcher.
    max_depth : int
        Recursion ceiling; recursive dispatch at ``depth >= max_depth`` fails.
    budget : SubcallBudget | None
        Shared tree-wide budget (a private unlimited one when omitted).
    deadline : Deadline | None
        Shared wall-clock deadline (unlimited when omitted).
    max_concurrent : int
        Cap on calls executing at once; extra calls queue in FIFO order.
        A slot is only freed when the worker returns, so a timed-out call
        keeps its slot until its backend request or child engine stops.
    subcall_timeout : float | None
        Per-call timeout, counted from when the call starts executing.
        Also forwarded to the backend as the request ``timeout``.
    system_prompt : str
        System prompt for flat sub-calls.
    max_tokens : int
        ``max_tokens`` forwarded to the backend.
    spawn_recursive : RecursiveRunner | None
        Runs a nested engine and returns its trajectory; ``None`` disables
        recursive dispatch.
    stats : EngineStats | None
        Shared usage counters.
    """

    def __init__(
        self,
        backend: LLMBackend,
        model: str,
        *,
        depth: int = 0,
        max_depth: int = 1,
        budget: SubcallBudget | None = None,
        deadline: Deadline | None = None,
        max_concurrent: int = 4,
        subcall_timeout: float | None = None,
        system_prompt: str = "",
        max_tokens: int = 4096,
        spawn_recursive: RecursiveRunner | None = None,
        stats: EngineStats | None = None,
    ) -> None:
        self.backend = backend
        self.model = model
        self.depth = depth
        self.max_depth = max_depth
        self.budget = budget or SubcallBudget(None)
        self.deadline = deadline or Deadline(None)
        self.subcall_timeout = subcall_timeout
        self.system_prompt = system_prompt
        self.max_tokens = max_tokens
        self.stats = stats
        self._spawn_recursive = spawn_recursive
        self._gate = _FifoGate(max_concurrent)
        self._lock = threading.Lock()
        self._records: list[SubcallRecord] = []

    @property
    def peak_concurrency(self) -> int:
        return self._gate.peak

    @property
    def can_recurse(self) -> bool:
        return self._spawn_recursive is not None and self.depth < self.max_depth

    # ------------------------------------------------------------------
    # Public dispatch API
    # ------------------------------------------------------------------

    def dispatch_flat(self, prompt: str, model_override: str | None = None) -> SubcallRecord:
        return self.dispatch_flat_batch([prompt], model_override)[0]

    def dispatch_flat_batch(
        self, prompts: Sequence[str], model_override: str | None = None
    ) -> list[SubcallRecord]:
        """Run flat sub-calls concurrently; results map positionally to *prompts*."""
        calls = [
            (_describe_input(prompt), self._flat_call(str(prompt), model_override))
            for prompt in prompts
        ]
        return self._dispatch_many(SubcallKind.FLAT, calls, model_override)

    def dispatch_recursive(
        self,
        task: str,
        context: str | ContextView | None = None,
        model_override: str | None = None,
    ) -> SubcallRecord:
        return self.dispatch_recursive_batch([task], [context], model_override)[0]

    def dispatch_recursive_batch(
        self,
        tasks: Sequence[str],
        contexts: Sequence[str | ContextView | None] | None = None,
        model_override: str | None = None,
    ) -> list[SubcallRecord]:
        """Spawn nested engines concurrently; results map positionally to *tasks*."""
        if contexts is None:
            contexts = [None] * len(tasks)
        if len(contexts) != len(tasks):
            raise ValueError(
                f"contexts length ({len(contexts)}) must match tasks length ({len(tasks)})"
            )
        calls = [
            (_describe_input(str(task), ctx), self._recursive_call(str(task), ctx, model_override))
            for task, ctx in zip(tasks, contexts, strict=True)
        ]
        return self._dispatch_many(SubcallKind.RECURSIVE, calls, model_override)

    def drain(self) -> list[SubcallRecord]:
        """Return and forget the records accumulated since the last drain."""
        with self._lock:
            records, self._records = self._records, []
        return records

    # ------------------------------------------------------------------
    # Admission, launch and collection
    # ------------------------------------------------------------------

    def _dispatch_many(
        self,
        kind: SubcallKind,
        calls: list[tuple[str, Callable[[SubcallRecord], str]]],
        model_override: str | None,
    ) -> list[SubcallRecord]:
        records: list[SubcallRecord] = []
        pending: list[tuple[SubcallRecord, Future[str]]] = []
        for input_ref, fn in calls:
            record = self._admit(kind, input_ref, model_override)
            records.append(record)
            if not record.done:
                pending.append((record, self._launch(record, fn)))
        if pending:
            logger.debug(
                "Dispatched %d %s sub-call(s) at depth %d", len(pending), kind, self.depth
            )
            self._collect(pending)
        return records

    def _admit(
        self, kind: SubcallKind, input_ref: str, model_override: str | None
    ) -> SubcallRecord:
        record = SubcallRecord(
            kind=kind, depth=self.depth, input_ref=input_ref, model_override=model_override
        )
        with self._lock:
            self._records.append(record)
        try:
            if self.deadline.expired():
                raise WallTimeExceeded("wall-clock deadline reached; sub-call not started")
            if kind is SubcallKind.RECURSIVE:
                if self._spawn_recursive is None:
                    raise SubcallFailed("recursive sub-calls are not available in this environment")
                if self.depth >= self.max_depth:
                    raise DepthExceeded(
                        f"recursion depth {self.depth} has reached max_depth {self.max_depth}"
                    )
            self.budget.acquire()
        except RDEError as e:
            self._finish(record, SubcallStatus.FAILED, error=e)
            return record

        if self.stats is not None:
            self.stats.count_subcall(kind)
        record.scope = self.deadline.child()
        return record

    def _launch(self, record: SubcallRecord, fn: Callable[[SubcallRecord], str]) -> Future[str]:
        future: Future[str] = Future()
        # Take the ticket on the caller's thread so queue order is submission order.
        ticket = self._gate.enqueue()

        def abandoned() -> bool:
            return record.done or self.deadline.expired()

        def runner() -> None:
            if not self._gate.wait(ticket, abandoned):
                return
            record.started_at = time.monotonic()
            future.set_running_or_notify_cancel()
            try:
                result = fn(record)
            except BaseException as e:  # noqa: BLE001 - surfaced through the future
                future.set_exception(e)
            else:
                future.set_result(result)
            finally:
                self._gate.release()

        threading.Thread(
            target=runner, name=f"rde-subcall-d{self.depth}", daemon=True
        ).start()
        return future

    def _collect(self, pending: list[tuple[SubcallRecord, Future[str]]]) -> None:
        while True:
            waiting: list[Future[str]] = []
            wake = _POLL_INTERVAL
            now = time.monotonic()
            for record, future in pending:
                if record.done:
                    continue
                if future.done():
                    self._resolve(record, future)
                    continue
                if self.subcall_timeout is not None and record.started_at is not None:
                    left = record.started_at + self.subcall_timeout - now
                    if left <= 0:
                        self._finish(
                            record,
                            SubcallStatus.TIMED_OUT,
                            error=SubcallTimeout(
                                f"sub-call exceeded its {self.subcall_timeout:g}s timeout"
                            ),
                        )
                        self._abandon(record)
                        continue
                    wake = min(wake, left)
                waiting.append(future)

            if not waiting:
                return

            if self.deadline.expired():
                for record, _ in pending:
                    if not record.done:
                        self._finish(
                            record,
                            SubcallStatus.FAILED,
                            error=WallTimeExceeded(
                                "wall-clock deadline reached before the sub-call finished"
                            ),
                        )
                        self._abandon(record)
                return

            remaining = self.deadline.remaining()
            if remaining is not None:
                wake = min(wake, remaining)
            wait(waiting, timeout=max(wake, 0.001), return_when=FIRST_COMPLETED)

    def _resolve(self, record: SubcallRecord, future: Future[str]) -> None:
        try:
            result = future.result()
        except RDEError as e:
            # Fatal errors end an invocation, never the parent of a sub-call.
            if e.fatal:
                self._fail_wrapped(record, e)
            else:
                self._finish(record, SubcallStatus.FAILED, error=e)
        except Exception as e:
            self._fail_wrapped(record, e)
        else:
            self._finish(record, SubcallStatus.SUCCEEDED, result=result)

    def _fail_wrapped(self, record: SubcallRecord, cause: Exception) -> None:
        error = SubcallFailed(describe_error(cause))
        error.__cause__ = cause
        self._finish(record, SubcallStatus.FAILED, error=error)

    @staticmethod
    def _abandon(record: SubcallRecord) -> None:
        """Tell a given-up call (and any child engine) to stop early."""
        if record.scope is not None:
            record.scope.cancel()

    def _finish(
        self,
        record: SubcallRecord,
        status: SubcallStatus,
        *,
        result: str | None = None,
        error: BaseException | None = None,
    ) -> None:
        record.status = status
        record.result = result
        record.error = error
        record.ended_at = time.monotonic()
        if error is not None:
            logger.debug("Sub-call %s %s: %s", record.input_ref, status, describe_error(error))
        if self.stats is not None:
            self.stats.count_outcome(status)

    # ------------------------------------------------------------------
    # Call bodies (run on worker threads)
    # ------------------------------------------------------------------

    def _flat_call(
        self, prompt: str, model_override: str | None
    ) -> Callable[[SubcallRecord], str]:
        model = model_override or self.model

        def call(record: SubcallRecord) -> str:
            messages = [
                {"role": "system", "content": self.system_prompt},
                {"role": "user", "content": prompt},
            ]
            result = self.backend.completion(
                messages, model, max_tokens=self.max_tokens, timeout=self.subcall_timeout
            )
            if self.stats is not None:
                self.stats.add_usage(result.usage)
            return result.text

        return call

    def _recursive_call(
        self,
        task: str,
        context: str | ContextView | None,
        model_override: str | None,
    ) -> Callable[[SubcallRecord], str]:
        def call(record: SubcallRecord) -> str:
            assert self._spawn_recursive is not None and record.scope is not None
            trajectory = self._spawn_recursive(task, context, model_override, record.scope)
            # Kept even for a slot that already timed out.
            record.trajectory = trajectory
            if trajectory.outcome is None:
                raise SubcallFailed(f"recursive child failed: {trajectory.error}")
            return trajectory.outcome.text

        return call
