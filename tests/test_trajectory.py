"""Unit tests for rde.trajectory (outcomes, trajectories, stats, sinks)."""

from __future__ import annotations

import json
from pathlib import Path

from rde.backends import TokenUsage
from rde.dispatch import SubcallKind, SubcallRecord, SubcallStatus
from rde.errors import ModelRequestFailed
from rde.repl import ExecutionResult, FinalSignal
from rde.trajectory import (
    EngineState,
    EngineStats,
    Exhausted,
    FinalAnswer,
    FinalFromVariable,
    Iteration,
    JSONLTrajectorySink,
    MemoryTrajectorySink,
    Phase,
    Trajectory,
    is_exhausted,
    outcome_to_dict,
)


def _trajectory_with_child() -> Trajectory:
    child = Trajectory(depth=1, query="child task", model="m", artifact_id="ctx_2")
    child.outcome = FinalAnswer("child says hi")
    child.state = EngineState.COMPLETED

    root = Trajectory(depth=0, query="root task", model="m", artifact_id="ctx_1")
    it = Iteration(index=0, phase=Phase.ITERATING, response="```python\n...\n```")
    it.fragments = ["x = rlm_query('child task')"]
    it.results = [ExecutionResult(stdout="", final=FinalSignal("answer", "done"))]
    record = SubcallRecord(
        kind=SubcallKind.RECURSIVE,
        depth=0,
        input_ref="literal:child task",
        status=SubcallStatus.SUCCEEDED,
        result="child says hi",
        trajectory=child,
    )
    it.subcalls = [record]
    root.iterations.append(it)
    root.iterations.append(Iteration(index=1, phase=Phase.FINALIZING, response="best effort"))
    root.outcome = FinalAnswer("done")
    root.state = EngineState.COMPLETED
    return root


class TestOutcomes:
    """Tests for the three outcome kinds."""

    def test_kinds(self) -> None:
        assert FinalAnswer("a").kind == "final_answer"
        assert FinalFromVariable("total", "7").kind == "final_from_variable"
        assert Exhausted("b", "max_iterations").kind == "exhausted"

    def test_variable_text(self) -> None:
        assert FinalFromVariable("total", "7").text == "7"

    def test_is_exhausted(self) -> None:
        assert is_exhausted(Exhausted("b", "max_wall_time"))
        assert not is_exhausted(FinalAnswer("a"))

    def test_to_dict(self) -> None:
        assert outcome_to_dict(FinalFromVariable("total", "7")) == {
            "kind": "final_from_variable",
            "text": "7",
            "variable": "total",
        }
        assert outcome_to_dict(Exhausted("b", "max_iterations"))["reason"] == "max_iterations"


class TestTrajectory:
    """Tests for Trajectory helpers."""

    def test_pass_counts(self) -> None:
        root = _trajectory_with_child()
        assert root.iterating_passes == 1
        assert root.finalizing_passes == 1
        assert not root.failed

    def test_walk_includes_children(self) -> None:
        root = _trajectory_with_child()
        assert [t.depth for t in root.walk()] == [0, 1]
        assert len(root.subcalls()) == 1

    def test_to_dict_nests_child(self) -> None:
        data = _trajectory_with_child().to_dict()
        assert data["state"] == "completed"
        assert data["outcome"] == {"kind": "final_answer", "text": "done"}
        first = data["iterations"][0]
        assert first["phase"] == "iterating"
        assert first["results"][0]["final"] == "answer"
        child = first["subcalls"][0]["trajectory"]
        assert child["query"] == "child task"
        assert child["artifact_id"] == "ctx_2"
        assert data["iterations"][1]["phase"] == "finalizing"

    def test_failed_to_dict(self) -> None:
        t = Trajectory(depth=0, query="q", model="m")
        t.state = EngineState.FAILED
        t.error = ModelRequestFailed("503")
        data = t.to_dict()
        assert t.failed
        assert data["outcome"] is None
        assert data["error"] == "ModelRequestFailed: 503"


class TestEngineStats:
    """Tests for shared usage counters."""

    def test_counters(self) -> None:
        stats = EngineStats()
        stats.count_iteration()
        stats.add_usage(TokenUsage(100, 20))
        stats.add_usage(TokenUsage(5, 5))
        stats.count_subcall(SubcallKind.FLAT)
        stats.count_subcall(SubcallKind.RECURSIVE)
        stats.count_outcome(SubcallStatus.FAILED)
        stats.count_outcome(SubcallStatus.TIMED_OUT)
        stats.count_outcome(SubcallStatus.SUCCEEDED)
        assert stats.to_dict() == {
            "iterations": 1,
            "llm_calls": 2,
            "flat_subcalls": 1,
            "recursive_subcalls": 1,
            "failed_subcalls": 1,
            "timed_out_subcalls": 1,
            "input_tokens": 105,
            "output_tokens": 25,
            "total_tokens": 130,
        }


class TestSinks:
    """Tests for trajectory sinks."""

    def test_memory_sink(self) -> None:
        sink = MemoryTrajectorySink()
        root = _trajectory_with_child()
        sink.record(root)
        assert sink.trajectories == [root]

    def test_jsonl_sink_appends(self, tmp_path: Path) -> None:
        path = tmp_path / "runs.jsonl"
        sink = JSONLTrajectorySink(path)
        sink.record(_trajectory_with_child())
        sink.record(Trajectory(depth=0, query="second", model="m"))
        lines = path.read_text(encoding="utf-8").splitlines()
        assert len(lines) == 2
        first = json.loads(lines[0])
        assert first["query"] == "root task"
        assert json.loads(lines[1])["state"] == "initializing"
