"""Engine Loop and the ``Engine`` entry point.

The Engine Loop drives one invocation: it keeps the running history, asks
the model for the next step, runs the fenced fragments it emits and stops on
the first finalisation signal.  When the iteration or wall-clock budget runs
out it makes exactly one more model request for a best-effort answer.

Recursive sub-calls run a fresh ``EngineLoop`` one level deeper that shares
the Context Store, the sub-call budget, the deadline and the usage counters
of the whole tree.
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, replace
from typing import Any

import click

from .backends import LLMBackend
from .config import ConfigError
from .context import ContextStore, ContextView
from .dispatch import Deadline, SubcallBudget, SubcallDispatcher, call_with_timeout
from .errors import ModelRequestFailed, RDEError, WallTimeExceeded, describe_error
from .prompts import (
    format_results,
    get_corrective_prompt,
    get_finalizing_prompt,
    get_sub_system_prompt,
    get_system_prompt,
    get_user_prompt,
)
from .repl import ExecutionResult, FinalSignal, REPLEnv
from .trajectory import (
    EngineState,
    EngineStats,
    Exhausted,
    FinalAnswer,
    FinalFromVariable,
    Iteration,
    Outcome,
    Phase,
    Trajectory,
    TrajectorySink,
    is_exhausted,
)

logger = logging.getLogger(__name__)

_LOG_PREFIX = click.style("[RDE]", fg="yellow", bold=True)
_TAG_RE = re.compile(r"^\w+$")

DEFAULT_QUERY = (
    "Summarize this input, keeping every detail needed to answer follow-up questions about it."
)

# Exhausted.reason -> wording used in the finalizing request.
_EXHAUSTION_REASONS = {
    "max_iterations": "iterations",
    "max_wall_time": "time",
}


@dataclass(frozen=True)
class EngineConfig:
    """Limits and switches for one top-level invocation tree.

    ``None`` for ``max_subcalls``, ``max_wall_time``, ``subcall_timeout`` or
    ``finalize_timeout`` means unlimited.  ``finalize_timeout`` bounds the one
    fallback request made after the iteration or wall-clock budget runs out.
    """

    max_iterations: int = 10
    max_depth: int = 1
    max_subcalls: int | None = 64
    max_wall_time: float | None = 300.0
    max_concurrent_subcalls: int = 4
    subcall_timeout: float | None = 120.0
    finalize_timeout: float | None = 120.0
    fragment_tag: str = "python"
    sub_model: str | None = None
    output_limit: int = 10_000
    max_tokens: int = 4096
    include_context_sample: bool = True
    compact_prompt: bool = False

    def __post_init__(self) -> None:
        if self.max_iterations < 1:
            raise ConfigError(f"max_iterations must be >= 1, got {self.max_iterations}")
        if self.max_depth < 0:
            raise ConfigError(f"max_depth must be >= 0, got {self.max_depth}")
        if self.max_subcalls is not None and self.max_subcalls < 0:
            raise ConfigError(f"max_subcalls must be >= 0, got {self.max_subcalls}")
        if self.max_wall_time is not None and self.max_wall_time <= 0:
            raise ConfigError(f"max_wall_time must be positive, got {self.max_wall_time}")
        if self.max_concurrent_subcalls < 1:
            raise ConfigError(
                f"max_concurrent_subcalls must be >= 1, got {self.max_concurrent_subcalls}"
            )
        if self.subcall_timeout is not None and self.subcall_timeout <= 0:
            raise ConfigError(f"subcall_timeout must be positive, got {self.subcall_timeout}")
        if self.finalize_timeout is not None and self.finalize_timeout <= 0:
            raise ConfigError(f"finalize_timeout must be positive, got {self.finalize_timeout}")
        if not _TAG_RE.match(self.fragment_tag):
            raise ConfigError(f"fragment_tag must be a single word, got {self.fragment_tag!r}")
        if self.output_limit < 1:
            raise ConfigError(f"output_limit must be >= 1, got {self.output_limit}")
        if self.max_tokens < 1:
            raise ConfigError(f"max_tokens must be >= 1, got {self.max_tokens}")

    def replace(self, **changes: Any) -> EngineConfig:
        return replace(self, **changes)


@dataclass
class EngineResult:
    """Result from :meth:`Engine.completion`."""

    answer: str
    outcome: Outcome | None
    trajectory: Trajectory | None
    stats: EngineStats
    success: bool = True
    error: str | None = None


def extract_fragments(text: str, tag: str = "python") -> list[str]:
    """Extract executable fragments from a model response.

    Only fenced blocks tagged exactly with *tag* count.  Untagged or
    differently-tagged blocks (``bash``, ``json``) are ignored so that
    non-Python code is never executed by accident.
    """
    pattern = rf"```{re.escape(tag)}[ \t]*\n(.*?)```"
    return re.findall(pattern, text, re.DOTALL)


def truncate_output(text: str, limit: int) -> str:
    """Keep the head and tail of *text* with an explicit marker in between."""
    if len(text) <= limit:
        return text
    head = limit // 2
    tail = limit - head
    omitted = len(text) - limit
    return f"{text[:head]}\n[... {omitted} characters truncated ...]\n{text[-tail:]}"


def format_result(number: int, result: ExecutionResult, limit: int) -> str:
    """Render one fragment result for the model."""
    parts = [f"[fragment {number}] exit status {result.exit_status}"]
    parts.append(f"stdout:\n{result.stdout.rstrip()}" if result.stdout else "stdout: (empty)")
    if result.stderr:
        parts.append(f"stderr:\n{result.stderr.rstrip()}")
    return truncate_output("\n".join(parts), limit)


def _outcome_from(signal: FinalSignal) -> Outcome:
    if signal.kind == "variable" and signal.variable is not None:
        return FinalFromVariable(name=signal.variable, value=signal.value)
    return FinalAnswer(text=signal.value)


@dataclass
class _Tree:
    """State shared by every invocation of one ``process`` call."""

    backend: LLMBackend
    sub_backend: LLMBackend
    config: EngineConfig
    store: ContextStore
    deadline: Deadline
    budget: SubcallBudget
    stats: EngineStats
    root_system_prompt: str | None = None
    sub_system_prompt: str | None = None
    verbose: bool = False


class EngineLoop:
    """One invocation of the engine (the root or a recursive child).

    Iterations within one loop run strictly in order; parallelism only exists
    across the sub-calls a fragment dispatches.

    Parameters
    ----------
    tree : _Tree
        Shared store, budget, deadline, stats and backends.
    artifact_id : str
        Artifact this invocation works on.
    model : str
        Model for this invocation's own requests.
    depth : int
        0 for the root, parent depth + 1 for recursive children.
    trajectory : Trajectory | None
        Pre-created trajectory to fill in (a new one otherwise).
    deadline : Deadline | None
        Scope this invocation stops on (the tree deadline for the root, a
        cancellable child scope for recursive calls).
    """

    def __init__(
        self,
        tree: _Tree,
        artifact_id: str,
        model: str,
        *,
        depth: int = 0,
        trajectory: Trajectory | None = None,
        deadline: Deadline | None = None,
    ) -> None:
        self.tree = tree
        self.deadline = deadline or tree.deadline
        self.config = tree.config
        self.artifact_id = artifact_id
        self.model = model
        self.depth = depth
        self.trajectory = trajectory or Trajectory(depth=depth, query="", model=model)
        self.trajectory.artifact_id = artifact_id
        self.history: list[dict[str, str]] = []
        self.repl: REPLEnv | None = None
        self.dispatcher: SubcallDispatcher | None = None

    def _log(self, message: str) -> None:
        if self.tree.verbose:
            indent = "  " * self.depth
            click.echo(f"{_LOG_PREFIX} {indent}{message}")

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def run(self, query: str) -> Outcome:
        """Run the invocation to an Outcome.

        Raises
        ------
        RDEError
            Fatal errors (``ModelRequestFailed``, ``EnvironmentStartError``,
            and ``WallTimeExceeded`` for children) after recording them on
            the trajectory.
        """
        trajectory = self.trajectory
        trajectory.query = query
        try:
            self._initialize(query)
            outcome = self._iterate()
        except BaseException as e:
            trajectory.state = EngineState.FAILED
            trajectory.error = e
            self._log(click.style(f"FAILED: {describe_error(e)}", fg="red"))
            raise
        finally:
            if self.repl is not None:
                self.repl.release()

        trajectory.outcome = outcome
        trajectory.state = EngineState.COMPLETED
        self._log(f"Completed with {outcome.kind} after {len(trajectory.iterations)} pass(es)")
        return outcome

    def _initialize(self, query: str) -> None:
        tree, cfg = self.tree, self.config
        self.trajectory.state = EngineState.INITIALIZING

        self.dispatcher = SubcallDispatcher(
            tree.sub_backend,
            cfg.sub_model or self.model,
            depth=self.depth,
            max_depth=cfg.max_depth,
            budget=tree.budget,
            deadline=self.deadline,
            max_concurrent=cfg.max_concurrent_subcalls,
            subcall_timeout=cfg.subcall_timeout,
            system_prompt=tree.sub_system_prompt or get_sub_system_prompt(),
            max_tokens=cfg.max_tokens,
            spawn_recursive=self._spawn_child,
            stats=tree.stats,
        )
        self.repl = REPLEnv(tree.store, self.artifact_id, self.dispatcher)

        system_prompt = tree.root_system_prompt or get_system_prompt(
            cfg.compact_prompt,
            fragment_tag=cfg.fragment_tag,
            can_recurse=self.dispatcher.can_recurse,
        )
        metadata = tree.store.describe(self.artifact_id)
        sample = tree.store.sample(self.artifact_id) if cfg.include_context_sample else ""
        self.history = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": get_user_prompt(query, metadata, sample)},
        ]

        self._log(f"Starting invocation at depth {self.depth} for query: {query[:100]}")
        self._log(metadata.splitlines()[0])
        self._log(f"Model: {self.model} | Max iterations: {cfg.max_iterations}")

    def _iterate(self) -> Outcome:
        cfg = self.config
        self.trajectory.state = EngineState.ITERATING

        while True:
            if self.deadline.expired():
                return self._finalize("max_wall_time")
            if self.trajectory.iterating_passes >= cfg.max_iterations:
                return self._finalize("max_iterations")

            iteration = self._begin(Phase.ITERATING)
            label = click.style(
                f"ITERATION {iteration.index + 1}/{cfg.max_iterations}", bold=True, fg="magenta"
            )
            self._log(label)

            response = self._request(iteration)
            if response is None:
                self._end(iteration)
                return self._finalize("max_wall_time")

            fragments = extract_fragments(response, cfg.fragment_tag)
            iteration.fragments = fragments
            if not fragments:
                self._log("No executable fragment in response; sending corrective instruction")
                iteration.note = "no executable fragment"
                self.history.append(
                    {"role": "user", "content": get_corrective_prompt(cfg.fragment_tag)}
                )
                self._end(iteration)
                continue

            self._log(f"Found {len(fragments)} fragment(s)")
            outcome, interrupted, blocks = self._execute(iteration, fragments)
            self._end(iteration)
            if outcome is not None:
                return outcome
            if interrupted:
                return self._finalize("max_wall_time")

            message = format_results(blocks)
            self._log(f"Feeding {len(message):,} chars of output back to the model")
            self.history.append({"role": "user", "content": message})

    def _finalize(self, reason: str) -> Outcome:
        if reason == "max_wall_time" and self.depth > 0:
            # The root owns the deadline; children just stop.
            raise WallTimeExceeded(
                "recursive call stopped: wall-clock deadline reached or parent gave up"
            )

        self.trajectory.state = EngineState.FINALIZING
        self._log(click.style(f"Budget exhausted ({reason}); requesting final answer", fg="cyan"))
        iteration = self._begin(Phase.FINALIZING)
        self.history.append(
            {"role": "user", "content": get_finalizing_prompt(_EXHAUSTION_REASONS[reason])}
        )
        try:
            result = self.tree.backend.completion(
                list(self.history),
                self.model,
                max_tokens=self.config.max_tokens,
                timeout=self.config.finalize_timeout,
            )
        except Exception as e:
            iteration.note = describe_error(e)
            self._end(iteration)
            raise ModelRequestFailed(f"finalizing request failed: {describe_error(e)}") from e

        self.tree.stats.add_usage(result.usage)
        iteration.response = result.text
        self.history.append({"role": "assistant", "content": result.text})
        self._end(iteration)
        return Exhausted(text=result.text, reason=reason)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _begin(self, phase: Phase) -> Iteration:
        iteration = Iteration(index=len(self.trajectory.iterations), phase=phase)
        self.trajectory.iterations.append(iteration)
        if phase is Phase.ITERATING:
            self.tree.stats.count_iteration()
        return iteration

    @staticmethod
    def _end(iteration: Iteration) -> None:
        iteration.ended_at = time.time()

    def _request(self, iteration: Iteration) -> str | None:
        """Ask the model for the next step; ``None`` if the deadline hit first."""
        messages = list(self.history)
        deadline = self.deadline

        def call() -> Any:
            return self.tree.backend.completion(
                messages, self.model, max_tokens=self.config.max_tokens
            )

        try:
            result = call_with_timeout(call, deadline.remaining(), name="rde-model")
        except TimeoutError as e:
            if deadline.expired():
                iteration.note = "model request interrupted by the wall-clock deadline"
                return None
            raise ModelRequestFailed(describe_error(e)) from e
        except Exception as e:
            iteration.note = describe_error(e)
            raise ModelRequestFailed(describe_error(e)) from e

        self.tree.stats.add_usage(result.usage)
        self._log(
            f"Model response: {len(result.text)} chars "
            f"(in={result.usage.input_tokens} out={result.usage.output_tokens} tokens)"
        )
        iteration.response = result.text
        self.history.append({"role": "assistant", "content": result.text})
        return result.text

    def _execute(
        self, iteration: Iteration, fragments: list[str]
    ) -> tuple[Outcome | None, bool, list[str]]:
        """Run fragments in order until one finalises or the deadline hits."""
        assert self.repl is not None and self.dispatcher is not None
        repl = self.repl
        deadline = self.deadline
        outcome: Outcome | None = None
        interrupted = False
        blocks: list[str] = []

        for number, fragment in enumerate(fragments, start=1):
            try:
                result = call_with_timeout(
                    lambda code=fragment: repl.run(code), deadline.remaining(), name="rde-fragment"
                )
            except TimeoutError:
                # Stop in-flight sub-calls and queued work across the tree.
                deadline.cancel()
                iteration.note = "fragment interrupted by the wall-clock deadline"
                interrupted = True
                break

            iteration.results.append(result)
            blocks.append(format_result(number, result, self.config.output_limit))
            if result.stderr:
                self._log(click.style(f"Fragment {number} error: {result.stderr[:200]}", fg="red"))
            if result.final is not None:
                outcome = _outcome_from(result.final)
                self._log(click.style(f"Finalisation signal ({result.final.kind})", fg="green"))
                break

        iteration.subcalls.extend(self.dispatcher.drain())
        return outcome, interrupted, blocks

    # ------------------------------------------------------------------
    # Recursion
    # ------------------------------------------------------------------

    def _spawn_child(
        self,
        task: str,
        context: str | ContextView | None,
        model_override: str | None,
        deadline: Deadline,
    ) -> Trajectory:
        """Run a nested invocation one level deeper and return its trajectory.

        The child stops at its next pass once *deadline* is cancelled.
        """
        store = self.tree.store
        if context is None:
            artifact_id = self.artifact_id
        elif isinstance(context, ContextView):
            artifact_id = context.id
        else:
            artifact_id = store.ingest(context).id

        model = model_override or self.model
        child = EngineLoop(
            self.tree, artifact_id, model, depth=self.depth + 1, deadline=deadline
        )
        try:
            child.run(task)
        except Exception as e:
            # Recorded on the child trajectory; the dispatcher fails the slot.
            logger.debug("Recursive call at depth %d failed: %s", self.depth + 1, e)
        return child.trajectory


class Engine:
    """Recursive Decomposition Engine.

    Stores an oversized input in a Context Store and lets the model explore
    it through code, delegating slices to flat or recursive sub-calls.

    Parameters
    ----------
    backend : LLMBackend
        Model client for the Engine Loop (root and recursive children).
    model : str
        Model for root requests.
    config : EngineConfig | None
        Default limits; ``process`` can override per call.
    sub_backend : LLMBackend | None
        Model client for flat sub-calls (defaults to *backend*).
    sink : TrajectorySink | None
        Receives the complete trajectory of every top-level invocation.
    verbose : bool
        Print progress through ``click.echo``.
    root_system_prompt : str | None
        Replaces the built-in root system prompt.
    sub_system_prompt : str | None
        Replaces the built-in flat sub-call system prompt.
    """

    def __init__(
        self,
        backend: LLMBackend,
        model: str,
        config: EngineConfig | None = None,
        *,
        sub_backend: LLMBackend | None = None,
        sink: TrajectorySink | None = None,
        verbose: bool = False,
        root_system_prompt: str | None = None,
        sub_system_prompt: str | None = None,
    ) -> None:
        self.backend = backend
        self.model = model
        self.config = config or EngineConfig()
        self.sub_backend = sub_backend or backend
        self.sink = sink
        self.verbose = verbose
        self.root_system_prompt = root_system_prompt
        self.sub_system_prompt = sub_system_prompt
        self.last_trajectory: Trajectory | None = None
        self._last_stats: EngineStats | None = None

    def process(
        self,
        raw_input: Any,
        config: EngineConfig | None = None,
        *,
        query: str | None = None,
    ) -> Outcome:
        """Decompose *raw_input* and return the Outcome.

        Parameters
        ----------
        raw_input : str | bytes | Path
            The oversized input.  Paths are memory-mapped.
        config : EngineConfig | None
            Overrides the engine's default config for this call.
        query : str | None
            What to do with the input (a generic summary request by default).

        Returns
        -------
        Outcome
            ``FinalAnswer``, ``FinalFromVariable`` or ``Exhausted``.

        Raises
        ------
        RDEError
            On fatal errors (``UnsupportedContent``, ``EnvironmentStartError``,
            ``ModelRequestFailed``).  The trajectory is still delivered to
            the sink and kept in ``last_trajectory``.
        """
        cfg = config or self.config
        query = query or DEFAULT_QUERY
        stats = EngineStats()
        trajectory = Trajectory(depth=0, query=query, model=self.model)
        self.last_trajectory = trajectory
        self._last_stats = stats

        store = ContextStore()
        deadline = Deadline(cfg.max_wall_time)
        tree = _Tree(
            backend=self.backend,
            sub_backend=self.sub_backend,
            config=cfg,
            store=store,
            deadline=deadline,
            budget=SubcallBudget(cfg.max_subcalls),
            stats=stats,
            root_system_prompt=self.root_system_prompt,
            sub_system_prompt=self.sub_system_prompt,
            verbose=self.verbose,
        )
        try:
            try:
                artifact = store.ingest(raw_input)
            except RDEError as e:
                trajectory.state = EngineState.FAILED
                trajectory.error = e
                raise
            loop = EngineLoop(tree, artifact.id, self.model, trajectory=trajectory)
            return loop.run(query)
        finally:
            # Abandoned fragments and sub-calls must not start new work.
            deadline.cancel()
            self._emit(trajectory)
            store.close()

    def _emit(self, trajectory: Trajectory) -> None:
        if self.sink is None:
            return
        try:
            self.sink.record(trajectory)
        except Exception:
            logger.warning("Trajectory sink %r failed", self.sink, exc_info=True)

    def completion(self, context: Any, query: str) -> EngineResult:
        """Run :meth:`process` and wrap the result.

        Fatal errors become ``success=False`` instead of propagating.
        An ``Exhausted`` outcome keeps its best-effort answer but is also
        reported as ``success=False``.
        """
        try:
            outcome = self.process(context, query=query)
        except RDEError as e:
            return EngineResult(
                answer="",
                outcome=None,
                trajectory=self.last_trajectory,
                stats=self._last_stats or EngineStats(),
                success=False,
                error=describe_error(e),
            )

        exhausted = is_exhausted(outcome)
        return EngineResult(
            answer=outcome.text,
            outcome=outcome,
            trajectory=self.last_trajectory,
            stats=self._last_stats or EngineStats(),
            success=not exhausted,
            error=f"Exhausted ({outcome.reason})" if isinstance(outcome, Exhausted) else None,
        )

    def cost_summary(self) -> dict[str, int]:
        """Usage counters of the last ``process`` call (zeros before the first)."""
        return (self._last_stats or EngineStats()).to_dict()

    # ------------------------------------------------------------------
    # Outer-agent trigger
    # ------------------------------------------------------------------

    def maybe_process(
        self,
        messages: list[dict[str, str]] | str,
        threshold: int,
        *,
        query: str | None = None,
        config: EngineConfig | None = None,
    ) -> Outcome | None:
        """Process *messages* only when they are too large for one turn.

        Returns ``None`` when the estimated token count is at or below
        *threshold*, so the caller can proceed with its normal path.
        """
        tokens = estimate_tokens(messages)
        if tokens <= threshold:
            return None
        logger.debug("Input of ~%d tokens exceeds threshold %d", tokens, threshold)
        text = messages if isinstance(messages, str) else render_messages(messages)
        return self.process(text, config, query=query)


def render_messages(messages: list[dict[str, str]]) -> str:
    """Flatten a conversation into plain text for ingestion."""
    return "\n\n".join(f"[{m.get('role', 'user')}]\n{m.get('content', '')}" for m in messages)


def estimate_tokens(value: list[dict[str, str]] | str) -> int:
    """Rough token estimate: ~4 characters per token."""
    if isinstance(value, str):
        return len(value) // 4
    return sum(len(m.get("content", "")) for m in value) // 4
