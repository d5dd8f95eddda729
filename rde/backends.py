"""Model clients used by the engine.

Every backend answers ``completion(messages, model, **kwargs)`` with the
full history; the ``model`` argument is how sub-calls override the model.

- AnthropicBackend: Direct Anthropic API
- OpenAICompatibleBackend: OpenAI-compatible APIs (Ollama, vLLM, etc.)
- ClaudeCLIBackend: Claude Code CLI (claude -p)
- CallbackBackend: Plain Python callable (tests and embedding)
"""

import json
import logging
import os
import shutil
import subprocess
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)


@dataclass
class TokenUsage:
    """Token usage statistics from a single model call."""

    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass
class CompletionResult:
    """Result from a backend completion call, including token usage."""

    text: str
    usage: TokenUsage


class LLMBackend(ABC):
    """Abstract base class for model backends.

    The engine puts a ``{"role": "system", ...}`` message first in the
    ``messages`` list.  Backends that need system content separately (e.g.
    Anthropic) extract it before forwarding; the others pass the list as-is.
    """

    @abstractmethod
    def completion(
        self, messages: list[dict[str, str]], model: str, **kwargs: Any
    ) -> CompletionResult:
        """Generate a completion from the whole history.

        Parameters
        ----------
        messages : list[dict[str, str]]
            List of message dicts with 'role' and 'content' keys.
            May include a ``{"role": "system", ...}`` entry.
        model : str
            Model identifier.
        **kwargs
            Provider-specific parameters.  ``max_tokens``, ``temperature``
            and ``timeout`` (seconds) are understood by all built-in
            backends.

        Returns
        -------
        CompletionResult
            Generated text response with token usage.
        """


class AnthropicBackend(LLMBackend):
    """Backend for Anthropic's Claude models."""

    def __init__(self, api_key: str | None = None) -> None:
        """Initialize Anthropic backend.

        Parameters
        ----------
        api_key : str | None
            Anthropic API key (defaults to ANTHROPIC_API_KEY env var).
        """
        try:
            import anthropic
        except ImportError as e:
            raise ImportError(
                "anthropic package required. Install with: pip install anthropic"
            ) from e

        self.client = anthropic.Anthropic(api_key=api_key or os.getenv("ANTHROPIC_API_KEY"))

    @staticmethod
    def _split_messages(
        messages: list[dict[str, str]],
    ) -> tuple[str | None, list[dict[str, str]]]:
        """Separate system messages from chat messages.

        Anthropic's API takes system content through a dedicated ``system``
        parameter rather than as a message with role ``system``.
        """
        system_message: str | None = None
        chat_messages: list[dict[str, str]] = []
        for msg in messages:
            if msg["role"] == "system":
                system_message = msg["content"]
            else:
                chat_messages.append({"role": msg["role"], "content": msg["content"]})
        return system_message, chat_messages

    def completion(
        self, messages: list[dict[str, str]], model: str, **kwargs: Any
    ) -> CompletionResult:
        system_message, chat_messages = self._split_messages(messages)

        params: dict[str, Any] = {
            "model": model,
            "max_tokens": kwargs.get("max_tokens", 4096),
            "messages": chat_messages,
        }

        if system_message:
            params["system"] = system_message

        if "temperature" in kwargs:
            params["temperature"] = kwargs["temperature"]

        if kwargs.get("timeout") is not None:
            params["timeout"] = kwargs["timeout"]

        response = self.client.messages.create(**params)
        # Responses may carry several content blocks; only text blocks count.
        text = "".join(
            block.text for block in response.content if getattr(block, "type", "text") == "text"
        )
        usage = TokenUsage(
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
        )
        return CompletionResult(text=text, usage=usage)


class OpenAICompatibleBackend(LLMBackend):
    """Backend for OpenAI-compatible APIs (Ollama, vLLM, LM Studio, etc.)."""

    def __init__(
        self,
        base_url: str = "http://localhost:11434/v1",
        api_key: str = "ollama",
    ) -> None:
        """Initialize OpenAI-compatible backend.

        Parameters
        ----------
        base_url : str
            Base URL for the API endpoint.
        api_key : str
            API key (many local servers don't require a real key).
        """
        try:
            import openai
        except ImportError as e:
            raise ImportError("openai package required. Install with: pip install openai") from e

        self.client = openai.OpenAI(base_url=base_url, api_key=api_key)
        self.base_url = base_url

    @staticmethod
    def _build_result(response: Any) -> CompletionResult:
        """Extract text and token usage from a raw API response."""
        text = response.choices[0].message.content or ""
        usage = TokenUsage()
        if response.usage:
            usage = TokenUsage(
                input_tokens=response.usage.prompt_tokens or 0,
                output_tokens=response.usage.completion_tokens or 0,
            )
        return CompletionResult(text=text, usage=usage)

    def completion(
        self, messages: list[dict[str, str]], model: str, **kwargs: Any
    ) -> CompletionResult:
        params: dict[str, Any] = {
            "model": model,
            "messages": messages,
        }

        for key in ("temperature", "max_tokens", "timeout"):
            if kwargs.get(key) is not None:
                params[key] = kwargs[key]

        response = self.client.chat.completions.create(**params)
        return self._build_result(response)


class CallbackBackend(LLMBackend):
    """Backend using a custom callback function.

    The callback receives ``(messages, model)`` and returns either the
    response text or a ready-made :class:`CompletionResult`.
    """

    def __init__(
        self, callback_fn: Callable[[list[dict[str, str]], str], str | CompletionResult]
    ) -> None:
        self.callback_fn = callback_fn

    def completion(
        self, messages: list[dict[str, str]], model: str, **kwargs: Any
    ) -> CompletionResult:
        """Generate completion using the callback.

        Extra keyword arguments are ignored.  Token usage is zero unless the
        callback returns a :class:`CompletionResult`.
        """
        result = self.callback_fn(messages, model)
        if isinstance(result, CompletionResult):
            return result
        return CompletionResult(text=result, usage=TokenUsage())


class ClaudeCLIBackend(LLMBackend):
    """Backend that shells out to ``claude -p`` (print mode).

    Uses the Claude Code CLI in non-interactive mode for each model call,
    which lets an existing Claude subscription stand in for an API key.
    Only the ``claude`` binary on ``$PATH`` is required.
    """

    def __init__(
        self,
        claude_cmd: str = "claude",
        *,
        max_turns: int = 1,
    ) -> None:
        """Initialize the Claude CLI backend.

        Parameters
        ----------
        claude_cmd : str
            Path or name of the ``claude`` binary (default: ``"claude"``).
        max_turns : int
            ``--max-turns`` passed to ``claude -p`` (default: 1).
        """
        resolved = shutil.which(claude_cmd)
        if resolved is None:
            raise FileNotFoundError(
                f"'{claude_cmd}' not found on PATH. "
                "Install Claude Code: https://docs.anthropic.com/en/docs/claude-code"
            )
        self._cmd = resolved
        self._max_turns = max_turns

    @staticmethod
    def _format_conversation(messages: list[dict[str, str]]) -> tuple[str | None, str]:
        """Split messages into a system prompt and a single user prompt.

        Multi-turn history is serialised into the prompt with role markers so
        the model sees the full conversation.

        Returns
        -------
        tuple[str | None, str]
            ``(system_prompt, user_prompt)``
        """
        system_prompt: str | None = None
        parts: list[str] = []

        for msg in messages:
            role = msg["role"]
            content = msg["content"]
            if role == "system":
                system_prompt = content
            elif role == "assistant":
                parts.append(f"[assistant]\n{content}")
            else:
                parts.append(f"[user]\n{content}")

        return system_prompt, "\n\n".join(parts)

    def completion(
        self, messages: list[dict[str, str]], model: str, **kwargs: Any
    ) -> CompletionResult:
        """Generate completion by calling ``claude -p``.

        Raises
        ------
        RuntimeError
            If the CLI exits with a non-zero status.
        subprocess.TimeoutExpired
            If ``timeout`` was given and the CLI ran past it.
        """
        system_prompt, user_prompt = self._format_conversation(messages)

        cmd: list[str] = [
            self._cmd,
            "-p",
            "--output-format",
            "json",
            "--model",
            model,
            "--max-turns",
            str(self._max_turns),
            "--no-session-persistence",
        ]
        if system_prompt:
            cmd.extend(["--system-prompt", system_prompt])
        cmd.append(user_prompt)

        logger.debug("Running: %s", " ".join(cmd[:6]) + " ...")

        proc = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            check=False,
            timeout=kwargs.get("timeout"),
        )

        if proc.returncode != 0:
            stderr = proc.stderr.strip()
            raise RuntimeError(f"claude exited with code {proc.returncode}: {stderr}")

        # --output-format json returns a JSON object with a "result" field.
        raw = proc.stdout.strip()
        usage = TokenUsage()
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            return CompletionResult(text=raw, usage=usage)

        if not isinstance(data, dict):
            return CompletionResult(text=raw, usage=usage)

        counts = data.get("usage") if isinstance(data.get("usage"), dict) else data
        if counts.get("input_tokens") is not None:
            usage = TokenUsage(
                input_tokens=int(counts["input_tokens"]),
                output_tokens=int(counts.get("output_tokens", 0)),
            )
        return CompletionResult(text=str(data.get("result", raw)), usage=usage)
