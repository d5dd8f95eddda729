"""Outcomes, per-invocation trajectories and where they are sent.

A :class:`Trajectory` is the ordered record of one invocation: every model
response, every fragment and its result, every sub-call and, for recursive
sub-calls, the child's own nested trajectory.  The root trajectory of each
top-level run is handed to a :class:`TrajectorySink` exactly once.
"""

from __future__ import annotations

import json
import threading
import time
from collections.abc import Iterator
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

from .errors import describe_error

if TYPE_CHECKING:
    from .backends import TokenUsage
    from .dispatch import SubcallKind, SubcallRecord, SubcallStatus
    from .repl import ExecutionResult


# ----------------------------------------------------------------------
# Outcomes
# ----------------------------------------------------------------------


@dataclass(frozen=True)
class FinalAnswer:
    """The model called ``FINAL(answer)``."""

    text: str
    kind: str = field(default="final_answer", init=False)


@dataclass(frozen=True)
class FinalFromVariable:
    """The model called ``FINAL_VAR(name)``."""

    name: str
    value: str
    kind: str = field(default="final_from_variable", init=False)

    @property
    def text(self) -> str:
        return self.value


@dataclass(frozen=True)
class Exhausted:
    """Budget ran out; ``text`` is the best-effort answer from Finalizing."""

    text: str
    reason: str
    kind: str = field(default="exhausted", init=False)


Outcome = FinalAnswer | FinalFromVariable | Exhausted


def is_exhausted(outcome: Outcome) -> bool:
    return isinstance(outcome, Exhausted)


def outcome_to_dict(outcome: Outcome) -> dict[str, Any]:
    data: dict[str, Any] = {"kind": outcome.kind, "text": outcome.text}
    if isinstance(outcome, FinalFromVariable):
        data["variable"] = outcome.name
    elif isinstance(outcome, Exhausted):
        data["reason"] = outcome.reason
    return data


# ----------------------------------------------------------------------
# Iterations and trajectories
# ----------------------------------------------------------------------


class Phase(StrEnum):
    ITERATING = "iterating"
    FINALIZING = "finalizing"


class EngineState(StrEnum):
    INITIALIZING = "initializing"
    ITERATING = "iterating"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class Iteration:
    """One model request/response plus the work it triggered."""

    index: int
    phase: Phase
    response: str = ""
    fragments: list[str] = field(default_factory=list)
    results: list[ExecutionResult] = field(default_factory=list)
    subcalls: list[SubcallRecord] = field(default_factory=list)
    started_at: float = field(default_factory=time.time)
    ended_at: float | None = None
    note: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "phase": str(self.phase),
            "response": self.response,
            "fragments": list(self.fragments),
            "results": [
                {
                    "stdout": r.stdout,
                    "stderr": r.stderr,
                    "exit_status": r.exit_status,
                    "final": r.final.kind if r.final is not None else None,
                }
                for r in self.results
            ],
            "subcalls": [s.to_dict() for s in self.subcalls],
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "note": self.note,
        }


@dataclass
class Trajectory:
    """Full record of one invocation (root or recursive child)."""

    depth: int
    query: str
    model: str
    artifact_id: str | None = None
    iterations: list[Iteration] = field(default_factory=list)
    outcome: Outcome | None = None
    state: EngineState = EngineState.INITIALIZING
    error: BaseException | None = None

    @property
    def iterating_passes(self) -> int:
        return sum(1 for it in self.iterations if it.phase is Phase.ITERATING)

    @property
    def finalizing_passes(self) -> int:
        return sum(1 for it in self.iterations if it.phase is Phase.FINALIZING)

    @property
    def failed(self) -> bool:
        return self.state is EngineState.FAILED

    def subcalls(self) -> list[SubcallRecord]:
        """Sub-calls issued by this invocation (not its children)."""
        return [s for it in self.iterations for s in it.subcalls]

    def walk(self) -> Iterator[Trajectory]:
        """Yield this trajectory and every nested child, depth first."""
        yield self
        for record in self.subcalls():
            if record.trajectory is not None:
                yield from record.trajectory.walk()

    def to_dict(self) -> dict[str, Any]:
        return {
            "depth": self.depth,
            "artifact_id": self.artifact_id,
            "query": self.query,
            "model": self.model,
            "state": str(self.state),
            "outcome": outcome_to_dict(self.outcome) if self.outcome is not None else None,
            "error": describe_error(self.error) if self.error is not None else None,
            "iterations": [it.to_dict() for it in self.iterations],
        }


# ----------------------------------------------------------------------
# Shared counters
# ----------------------------------------------------------------------


@dataclass
class EngineStats:
    """Usage counters shared by every invocation in one tree."""

    iterations: int = 0
    llm_calls: int = 0
    flat_subcalls: int = 0
    recursive_subcalls: int = 0
    failed_subcalls: int = 0
    timed_out_subcalls: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def count_iteration(self) -> None:
        with self._lock:
            self.iterations += 1

    def add_usage(self, usage: TokenUsage) -> None:
        with self._lock:
            self.llm_calls += 1
            self.input_tokens += usage.input_tokens
            self.output_tokens += usage.output_tokens

    def count_subcall(self, kind: SubcallKind) -> None:
        with self._lock:
            if kind == "recursive":
                self.recursive_subcalls += 1
            else:
                self.flat_subcalls += 1

    def count_outcome(self, status: SubcallStatus) -> None:
        with self._lock:
            if status == "failed":
                self.failed_subcalls += 1
            elif status == "timed_out":
                self.timed_out_subcalls += 1

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def to_dict(self) -> dict[str, int]:
        with self._lock:
            return {
                "iterations": self.iterations,
                "llm_calls": self.llm_calls,
                "flat_subcalls": self.flat_subcalls,
                "recursive_subcalls": self.recursive_subcalls,
                "failed_subcalls": self.failed_subcalls,
                "timed_out_subcalls": self.timed_out_subcalls,
                "input_tokens": self.input_tokens,
                "output_tokens": self.output_tokens,
                "total_tokens": self.input_tokens + self.output_tokens,
            }


# ----------------------------------------------------------------------
# Sinks
# ----------------------------------------------------------------------


class TrajectorySink(Protocol):
    def record(self, trajectory: Trajectory) -> None: ...


class MemoryTrajectorySink:
    """Keeps trajectories in a list; handy for embedding and tests."""

    def __init__(self) -> None:
        self.trajectories: list[Trajectory] = []

    def record(self, trajectory: Trajectory) -> None:
        self.trajectories.append(trajectory)


class JSONLTrajectorySink:
    """Appends one JSON object per top-level invocation to *path*."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    def record(self, trajectory: Trajectory) -> None:
        line = json.dumps(trajectory.to_dict(), ensure_ascii=False, default=str)
        with self._lock, self.path.open("a", encoding="utf-8") as fh:
            fh.write(line + "\n")
