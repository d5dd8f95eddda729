"""Shared fixtures for the RDE test suite."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest
from dotenv import load_dotenv

from rde.backends import CallbackBackend
from rde.context import ContextStore
from rde.prompts import SUB_SYSTEM_PROMPT


def pytest_configure(config: pytest.Config) -> None:
    """Load .env before test collection so API keys are available for skip checks."""
    load_dotenv(override=True)


# ---------------------------------------------------------------------------
# Sample text content
# ---------------------------------------------------------------------------

SAMPLE_TEXT = """\
Chapter 1: Introduction
This is the introduction to the document.
It covers the basics of the topic.

Chapter 2: Methods
The methods section describes the approach.
Multiple techniques were used in the analysis.

Chapter 3: Results
The results show significant improvements.
Data was collected over a period of six months.

Chapter 4: Conclusion
In conclusion, the study demonstrates clear benefits.
Future work will focus on scalability.
"""

SAMPLE_TEXT_SMALL = "Hello, world!"


def make_log_text(size: int = 120_000, needle: str | None = None, needle_at: int = 10_000) -> str:
    """Build ``size`` characters of log lines, optionally planting *needle*."""
    line = "2024-05-01 12:00:00 INFO worker-3 request served in 12ms status=200\n"
    text = (line * (size // len(line) + 1))[:size]
    if needle is not None:
        text = text[:needle_at] + needle + text[needle_at + len(needle) :]
    return text


# ---------------------------------------------------------------------------
# Temp file fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def tmp_text_file(tmp_path: Path) -> Path:
    """Create a temporary text file with SAMPLE_TEXT."""
    p = tmp_path / "sample.txt"
    p.write_text(SAMPLE_TEXT, encoding="utf-8")
    return p


@pytest.fixture()
def tmp_empty_file(tmp_path: Path) -> Path:
    """Create an empty temporary file."""
    p = tmp_path / "empty.txt"
    p.write_text("", encoding="utf-8")
    return p


@pytest.fixture()
def tmp_binary_file(tmp_path: Path) -> Path:
    """Create a file that is clearly not text."""
    p = tmp_path / "blob.bin"
    p.write_bytes(b"\x89PNG\r\n\x1a\n\x00\x00\x00\rIHDR")
    return p


# ---------------------------------------------------------------------------
# Store fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def store() -> Iterator[ContextStore]:
    """Empty ContextStore, closed after the test."""
    s = ContextStore()
    yield s
    s.close()


@pytest.fixture()
def sample_artifact_id(store: ContextStore) -> str:
    """SAMPLE_TEXT ingested into ``store``."""
    return store.ingest(SAMPLE_TEXT).id


# ---------------------------------------------------------------------------
# Backend helpers
# ---------------------------------------------------------------------------


def make_echo_callback() -> CallbackBackend:
    """Backend that echoes the last user message content."""

    def _echo(messages: list[dict[str, str]], model: str) -> str:
        return messages[-1]["content"] if messages else ""

    return CallbackBackend(_echo)


def make_deterministic_callback(responses: list[str]) -> CallbackBackend:
    """Backend that returns responses from a list in order, cycling."""
    idx = {"i": 0}
    lock = threading.Lock()

    def _cb(messages: list[dict[str, str]], model: str) -> str:
        with lock:
            resp = responses[idx["i"] % len(responses)]
            idx["i"] += 1
        return resp

    return CallbackBackend(_cb)


def make_failing_callback(error: Exception) -> CallbackBackend:
    """Backend whose every call raises *error*."""

    def _cb(messages: list[dict[str, str]], model: str) -> str:
        raise error

    return CallbackBackend(_cb)


def is_subcall(messages: list[dict[str, str]]) -> bool:
    """True for flat ``llm_query`` requests."""
    return bool(messages) and messages[0]["content"] == SUB_SYSTEM_PROMPT


def is_finalizing(messages: list[dict[str, str]]) -> bool:
    """True for the single 'answer now' request of the Finalizing phase."""
    return "Code will no longer be executed" in messages[-1]["content"]


class RecordingBackend(CallbackBackend):
    """CallbackBackend that keeps every request it served.

    ``calls`` holds ``(messages, model)`` tuples in arrival order.
    """

    def __init__(self, callback_fn: Callable[[list[dict[str, str]], str], str]) -> None:
        self.calls: list[tuple[list[dict[str, str]], str]] = []
        self._lock = threading.Lock()

        def _record(messages: list[dict[str, str]], model: str) -> str:
            with self._lock:
                self.calls.append((list(messages), model))
            return callback_fn(messages, model)

        super().__init__(_record)


def make_scripted_backend(
    root: list[str],
    *,
    children: dict[str, list[str]] | None = None,
    sub: Callable[[str], str] | None = None,
    finalize: str = "best effort answer",
) -> RecordingBackend:
    """Backend that plays scripted replies per role.

    Parameters
    ----------
    root : list[str]
        Replies to the root invocation, in order (the last one repeats).
    children : dict[str, list[str]] | None
        Replies for recursive invocations, keyed by a substring of the
        child's task.
    sub : Callable[[str], str] | None
        Reply for flat sub-calls given the prompt (default ``"sub:<prompt>"``).
    finalize : str
        Reply to every finalizing request.
    """
    children = children or {}
    counters: dict[str, int] = {}
    lock = threading.Lock()

    def _next(key: str, script: list[str]) -> str:
        with lock:
            i = counters.get(key, 0)
            counters[key] = i + 1
        return script[min(i, len(script) - 1)]

    def _cb(messages: list[dict[str, str]], model: str) -> str:
        if is_subcall(messages):
            prompt = messages[-1]["content"]
            return sub(prompt) if sub else f"sub:{prompt}"
        if is_finalizing(messages):
            return finalize
        first_user = messages[1]["content"]
        for key, script in children.items():
            if f"Query: {key}" in first_user:
                return _next(key, script)
        return _next("__root__", root)

    return RecordingBackend(_cb)


def make_sleepy_callback(delays: dict[str, float], default: float = 0.0) -> RecordingBackend:
    """Flat-call backend that sleeps per prompt and echoes it upper-cased."""

    def _cb(messages: list[dict[str, str]], model: str) -> str:
        prompt = messages[-1]["content"]
        time.sleep(delays.get(prompt, default))
        return prompt.upper()

    return RecordingBackend(_cb)


def fence(code: str, tag: str = "python") -> str:
    """Wrap *code* in an executable fence."""
    return f"Let me look.\n```{tag}\n{code}\n```"
