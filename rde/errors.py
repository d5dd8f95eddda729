"""Error taxonomy for the decomposition engine.

Fatal errors end the invocation that raised them with a ``failed`` state.
Raised inside a sub-call they are wrapped in ``SubcallFailed`` instead.
Non-fatal ones are folded into the model-visible history (or into a failed
sub-call slot) so the model can adapt.
"""

from __future__ import annotations


class RDEError(Exception):
    """Base class for all engine errors."""

    fatal: bool = False


class UnsupportedContent(RDEError):
    """Input cannot be stored as addressable text."""

    fatal = True


class EnvironmentStartError(RDEError):
    """The execution environment could not be started."""

    fatal = True


class ModelRequestFailed(RDEError):
    """The model client raised while serving a root request."""

    fatal = True


class PolicyLimit(RDEError):
    """A configured ceiling was hit."""


class DepthExceeded(PolicyLimit):
    """Recursive dispatch attempted at the depth ceiling."""


class BudgetExceeded(PolicyLimit):
    """The tree-wide sub-call budget is used up."""


class WallTimeExceeded(PolicyLimit):
    """The shared wall-clock deadline expired or was cancelled."""


class FragmentRuntimeError(RDEError):
    """A fragment misused a primitive (e.g. ``FINAL_VAR`` on a missing name)."""


class SubcallTimeout(RDEError):
    """A dispatched sub-call ran past its own timeout."""


class SubcallFailed(RDEError):
    """A dispatched sub-call raised or its recursive child failed."""


def describe_error(error: BaseException) -> str:
    """Render an exception the way fragments and history see it."""
    return f"{type(error).__name__}: {error}"
