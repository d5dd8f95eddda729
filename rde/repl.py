"""Execution Environment for model-authored Python fragments.

Each invocation gets its own ``REPLEnv`` bound to one stored artifact.  The
artifact is exposed as ``CONTEXT``, a read-only view that goes through the
Context Store on every access, so fragments never receive the raw content
unless they ask for it with ``str(CONTEXT)``.  Container-level isolation is
expected to be provided by the runtime (e.g. a rootless container).
"""

from __future__ import annotations

import collections
import itertools
import json
import math
import re
from collections.abc import Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from .context import ContextStore, ContextView
from .errors import EnvironmentStartError, FragmentRuntimeError, SubcallFailed, describe_error

if TYPE_CHECKING:
    from .dispatch import SubcallDispatcher


# Restricted set of builtins safe for the REPL sandbox.
# This prevents model-generated code from importing arbitrary modules,
# accessing the filesystem, or executing shell commands.
_SAFE_BUILTINS: dict[str, Any] = {
    # Types and constructors
    "True": True,
    "False": False,
    "None": None,
    "bool": bool,
    "int": int,
    "float": float,
    "str": str,
    "bytes": bytes,
    "list": list,
    "tuple": tuple,
    "dict": dict,
    "set": set,
    "frozenset": frozenset,
    "complex": complex,
    "bytearray": bytearray,
    "object": object,
    "type": type,
    "slice": slice,
    "range": range,
    "property": property,
    "staticmethod": staticmethod,
    "classmethod": classmethod,
    "super": super,
    # Iteration and comprehension
    "enumerate": enumerate,
    "zip": zip,
    "map": map,
    "filter": filter,
    "reversed": reversed,
    "iter": iter,
    "next": next,
    # Numeric and math
    "abs": abs,
    "round": round,
    "min": min,
    "max": max,
    "sum": sum,
    "pow": pow,
    "divmod": divmod,
    # String and representation
    "repr": repr,
    "ascii": ascii,
    "chr": chr,
    "ord": ord,
    "format": format,
    "hash": hash,
    # Collections and sorting
    "len": len,
    "sorted": sorted,
    "any": any,
    "all": all,
    # Type checking
    "isinstance": isinstance,
    "issubclass": issubclass,
    "callable": callable,
    "id": id,
    "dir": dir,
    "vars": vars,
    "hasattr": hasattr,
    "getattr": getattr,
    "setattr": setattr,
    "delattr": delattr,
    # Exceptions (needed for try/except)
    "Exception": Exception,
    "ValueError": ValueError,
    "TypeError": TypeError,
    "KeyError": KeyError,
    "IndexError": IndexError,
    "AttributeError": AttributeError,
    "RuntimeError": RuntimeError,
    "StopIteration": StopIteration,
    "ZeroDivisionError": ZeroDivisionError,
    "OverflowError": OverflowError,
    "ArithmeticError": ArithmeticError,
    "LookupError": LookupError,
    "UnicodeError": UnicodeError,
    "UnicodeDecodeError": UnicodeDecodeError,
    "UnicodeEncodeError": UnicodeEncodeError,
    "NotImplementedError": NotImplementedError,
}

# Names injected by the environment that SHOW_VARS should hide.
_REPL_INTERNALS = frozenset(
    {
        "__builtins__",
        "CONTEXT",
        "CONTEXT_ID",
        "context_length",
        "context_preview",
        "context_slice",
        "SHOW_VARS",
        "llm_query",
        "llm_query_batched",
        "rlm_query",
        "rlm_query_batched",
        "FINAL",
        "FINAL_VAR",
        "re",
        "json",
        "math",
        "collections",
        "itertools",
        "print",
    }
)


@dataclass(frozen=True)
class FinalSignal:
    """A finalisation request raised by ``FINAL`` or ``FINAL_VAR``."""

    kind: str
    value: str
    variable: str | None = None


@dataclass
class ExecutionResult:
    """Result of running one fragment."""

    stdout: str
    stderr: str = ""
    exit_status: int = 0
    final: FinalSignal | None = None

    @property
    def success(self) -> bool:
        return self.exit_status == 0


def _error_text(error: BaseException) -> str:
    return f"[ERROR: {describe_error(error)}]"


class REPLEnv:
    """Persistent execution environment for one invocation.

    Provides:
    - ``CONTEXT``: read-only :class:`ContextView` of the bound artifact
    - ``CONTEXT_ID``, ``context_length()``, ``context_preview()``,
      ``context_slice()`` for store-mediated access
    - ``llm_query()`` / ``llm_query_batched()`` for flat sub-calls
    - ``rlm_query()`` / ``rlm_query_batched()`` for recursive sub-calls
    - ``FINAL()`` / ``FINAL_VAR()`` to finish, ``SHOW_VARS()`` to inspect
    - Pre-imported modules: re, json, math, collections, itertools

    The namespace is preserved across ``run()`` calls, so variables defined
    in one fragment are available in later ones.

    Parameters
    ----------
    store : ContextStore
        Store holding the artifact.
    artifact_id : str
        Artifact to bind as ``CONTEXT``.
    dispatcher : SubcallDispatcher | None
        Dispatcher backing the sub-query primitives.  Without one the
        primitives return error strings.

    Raises
    ------
    EnvironmentStartError
        If *artifact_id* is not in *store*.
    """

    def __init__(
        self,
        store: ContextStore,
        artifact_id: str,
        dispatcher: SubcallDispatcher | None = None,
    ) -> None:
        if artifact_id not in store:
            raise EnvironmentStartError(f"unknown artifact {artifact_id!r}")
        self.store = store
        self.artifact_id = artifact_id
        self.dispatcher = dispatcher
        self._output: list[str] = []
        self._final: FinalSignal | None = None
        self._pending_final_var: str | None = None
        self._released = False
        self._namespace: dict[str, Any] = self._build_namespace()

    def __enter__(self) -> REPLEnv:
        return self

    def __exit__(self, *_: object) -> None:
        self.release()

    def _build_namespace(self) -> dict[str, Any]:
        return {
            "__builtins__": _SAFE_BUILTINS.copy(),
            "CONTEXT": self.store.view(self.artifact_id),
            "CONTEXT_ID": self.artifact_id,
            "context_length": self._context_length,
            "context_preview": self._context_preview,
            "context_slice": self._context_slice,
            "llm_query": self._llm_query,
            "llm_query_batched": self._llm_query_batched,
            "rlm_query": self._rlm_query,
            "rlm_query_batched": self._rlm_query_batched,
            "FINAL": self._final_answer,
            "FINAL_VAR": self._final_var,
            "SHOW_VARS": self._show_vars,
            "re": re,
            "json": json,
            "math": math,
            "collections": collections,
            "itertools": itertools,
            "print": self._capture_print,
        }

    # ------------------------------------------------------------------
    # Primitives
    # ------------------------------------------------------------------

    def _capture_print(self, *args: Any, **kwargs: Any) -> None:
        """Capture print output.

        ``sep`` and ``end`` behave like the built-in; ``file`` and ``flush``
        are accepted and ignored.
        """
        sep_val = kwargs.get("sep")
        end_val = kwargs.get("end")
        sep = str(sep_val) if sep_val is not None else " "
        end = str(end_val) if end_val is not None else "\n"
        self._output.append(sep.join(str(arg) for arg in args) + end)

    def _show_vars(self) -> None:
        user_vars = self.list_variables()
        if not user_vars:
            self._capture_print("(no user-defined variables)")
            return
        for name, value in user_vars.items():
            rep = repr(value)
            if len(rep) > 100:
                rep = rep[:97] + "..."
            self._capture_print(f"{name} = {rep}")

    def _context_length(self) -> int:
        return self.store.get(self.artifact_id).length

    def _context_preview(self, n: int = 1000) -> str:
        return self.store.preview(self.artifact_id, n)

    def _context_slice(self, start: int | None = None, end: int | None = None) -> str:
        return self.store.slice(self.artifact_id, start, end)

    def _llm_query(self, prompt: str, model: str | None = None) -> str:
        if self.dispatcher is None:
            return _error_text(SubcallFailed("no sub-call dispatcher attached"))
        return self.dispatcher.dispatch_flat(str(prompt), model).text()

    def _llm_query_batched(self, prompts: Sequence[str], model: str | None = None) -> list[str]:
        prompts = [str(p) for p in prompts]
        if self.dispatcher is None:
            return [_error_text(SubcallFailed("no sub-call dispatcher attached")) for _ in prompts]
        return [r.text() for r in self.dispatcher.dispatch_flat_batch(prompts, model)]

    def _rlm_query(
        self,
        task: str,
        context: str | ContextView | None = None,
        model: str | None = None,
    ) -> str:
        _check_subcontext(context)
        if self.dispatcher is None:
            return _error_text(SubcallFailed("no sub-call dispatcher attached"))
        return self.dispatcher.dispatch_recursive(str(task), context, model).text()

    def _rlm_query_batched(
        self,
        tasks: Sequence[str],
        contexts: Sequence[str | ContextView | None] | None = None,
        model: str | None = None,
    ) -> list[str]:
        tasks = [str(t) for t in tasks]
        if contexts is not None:
            contexts = list(contexts)
            for ctx in contexts:
                _check_subcontext(ctx)
        if self.dispatcher is None:
            return [_error_text(SubcallFailed("no sub-call dispatcher attached")) for _ in tasks]
        records = self.dispatcher.dispatch_recursive_batch(tasks, contexts, model)
        return [r.text() for r in records]

    def _final_answer(self, answer: Any) -> None:
        if self._final is None and self._pending_final_var is None:
            self._final = FinalSignal(kind="answer", value=str(answer))

    def _final_var(self, var_name: str) -> None:
        # Resolved once the fragment has finished.
        if self._final is None and self._pending_final_var is None:
            self._pending_final_var = str(var_name)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run(self, fragment: str) -> ExecutionResult:
        """Execute one fragment.

        The namespace persists across calls.  Exceptions raised by the
        fragment never escape: they are rendered to ``stderr`` with a
        non-zero exit status.  A finalisation call made before the failure
        still counts.

        Parameters
        ----------
        fragment : str
            Python source to execute.

        Returns
        -------
        ExecutionResult
            Captured output, exit status and any finalisation signal.
        """
        if self._released:
            raise EnvironmentStartError("execution environment has been released")

        self._output = []
        self._final = None
        self._pending_final_var = None
        errors: list[str] = []

        try:
            exec(fragment, self._namespace)  # noqa: S102  # nosec B102
        except Exception as e:
            errors.append(describe_error(e))

        if self._final is None and self._pending_final_var is not None:
            name = self._pending_final_var
            if name in self._namespace and name not in _REPL_INTERNALS:
                self._final = FinalSignal(
                    kind="variable", value=str(self._namespace[name]), variable=name
                )
            else:
                errors.append(
                    describe_error(
                        FragmentRuntimeError(f"FINAL_VAR: variable '{name}' is not defined")
                    )
                )

        return ExecutionResult(
            stdout="".join(self._output),
            stderr="\n".join(errors),
            exit_status=1 if errors else 0,
            final=self._final,
        )

    def get_variable(self, name: str) -> Any:
        """Return the user binding for *name*, or ``None``."""
        if name in _REPL_INTERNALS:
            return None
        return self._namespace.get(name)

    def list_variables(self) -> dict[str, Any]:
        return {
            k: v
            for k, v in self._namespace.items()
            if k not in _REPL_INTERNALS and not k.startswith("_")
        }

    def release(self) -> None:
        """Drop the namespace.  The environment cannot run fragments afterwards."""
        self._released = True
        self._namespace.clear()


def _check_subcontext(context: object) -> None:
    if context is not None and not isinstance(context, str | ContextView):
        raise TypeError(
            f"context must be a str, a CONTEXT view or None, not {type(context).__name__}"
        )
