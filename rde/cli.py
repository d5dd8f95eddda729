"""CLI entry point for RDE (Recursive Decomposition Engine).

Runs one decomposition over a file (or stdin) with any supported backend:
- Anthropic API (Claude)
- OpenAI (GPT-4o, etc.)
- OpenRouter (multi-provider gateway)
- Hugging Face Inference API
- OpenAI-compatible (Ollama, vLLM, etc.)
- Claude CLI (claude -p)

Usage:
    rde --model claude-sonnet-4-20250514 --context-file app.log --query "Why did it crash?"
    rde --backend ollama --model llama3.2 --context-file doc.txt --query "Summarize"
    cat dump.json | rde --model ... --context-file - --query "List the failing ids"
    rde --config rde.yaml --context-file doc.txt --query "Summarize" --trajectory-log runs.jsonl

Exit codes: 0 final answer, 2 exhausted (best-effort answer), 1 error, 130 interrupted.
"""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path
from typing import Any

import click

from .backends import (
    AnthropicBackend,
    ClaudeCLIBackend,
    LLMBackend,
    OpenAICompatibleBackend,
)
from .config import (
    ConfigError,
    RDEConfig,
    ResolvedRoleConfig,
    SettingsConfig,
    load_config,
    resolve_role,
)
from .engine import DEFAULT_QUERY, Engine, EngineConfig, estimate_tokens
from .errors import RDEError, describe_error
from .trajectory import Exhausted, JSONLTrajectorySink

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_EXHAUSTED = 2
EXIT_INTERRUPTED = 130

_DIRECT_SYSTEM_PROMPT = "Answer the user's query using the document they provide."


def _load_context(path: Path) -> str | Path:
    """Return stdin text for ``-``, otherwise the (memory-mappable) path.

    Raises
    ------
    FileNotFoundError
        If the context file doesn't exist.
    """
    if str(path) == "-":
        text = sys.stdin.read()
        click.echo(f"Context: {len(text):,} characters from stdin")
        return text
    if not path.is_file():
        raise FileNotFoundError(f"Context file not found: {path}")
    click.echo(f"Context file: {path} ({path.stat().st_size:,} bytes, memory-mapped)")
    return path


def _context_tokens(context: str | Path) -> int:
    if isinstance(context, Path):
        return context.stat().st_size // 4
    return estimate_tokens(context)


def _resolve_ollama_url(base_url_override: str | None) -> str:
    """Resolve the Ollama base URL from CLI flag or ``OLLAMA_HOST``."""
    if base_url_override:
        return base_url_override
    ollama_host = os.getenv("OLLAMA_HOST", "localhost:11434")
    if not ollama_host.startswith("http"):
        ollama_host = f"http://{ollama_host}"
    return f"{ollama_host.rstrip('/')}/v1"


# Keyed OpenAI-compatible presets: backend_name -> (display_name, env_var, default_url).
_OPENAI_COMPAT_PRESETS: dict[str, tuple[str, str, str]] = {
    "openai": ("OpenAI", "OPENAI_API_KEY", "https://api.openai.com/v1"),
    "openrouter": ("OpenRouter", "OPENROUTER_API_KEY", "https://openrouter.ai/api/v1"),
    "huggingface": ("Hugging Face", "HF_TOKEN", "https://router.huggingface.co/v1"),
}


def _resolve_api_key(resolved: ResolvedRoleConfig, env_var: str, role_name: str) -> str:
    """Resolve an API key from the config or environment, raising on missing."""
    api_key = resolved.api_key or os.getenv(env_var)
    if not api_key:
        raise ValueError(f"{env_var} not set (needed for {role_name} role)")
    return api_key


def _create_backend(resolved: ResolvedRoleConfig, role_name: str) -> LLMBackend:
    """Create a model backend from a resolved role config.

    Raises
    ------
    ValueError
        If the backend name is unknown or a required API key is missing.
    """
    backend_name = resolved.backend or "anthropic"

    if backend_name == "anthropic":
        api_key = _resolve_api_key(resolved, "ANTHROPIC_API_KEY", role_name)
        click.echo(f"Using Anthropic backend for {role_name} with model: {resolved.model}")
        return AnthropicBackend(api_key=api_key)

    preset = _OPENAI_COMPAT_PRESETS.get(backend_name)
    if preset:
        display_name, env_var, default_url = preset
        api_key = _resolve_api_key(resolved, env_var, role_name)
        base_url = resolved.base_url or default_url
        click.echo(f"Using {display_name} backend for {role_name} with model: {resolved.model}")
        click.echo(f"  Base URL: {base_url}")
        return OpenAICompatibleBackend(base_url=base_url, api_key=api_key)

    if backend_name == "ollama":
        base_url = _resolve_ollama_url(resolved.base_url)
        click.echo(f"Using Ollama backend for {role_name} with model: {resolved.model}")
        click.echo(f"  Base URL: {base_url}")
        return OpenAICompatibleBackend(base_url=base_url, api_key="ollama")

    if backend_name == "claude":
        click.echo(f"Using Claude CLI backend for {role_name} with model: {resolved.model}")
        return ClaudeCLIBackend()

    raise ValueError(f"Unknown backend '{backend_name}' for {role_name} role")


def _roles_differ(a: ResolvedRoleConfig, b: ResolvedRoleConfig) -> bool:
    """Return True if two resolved configs need separate backends."""
    return (a.backend != b.backend) or (a.base_url != b.base_url) or (a.api_key != b.api_key)


def _apply_cli_overrides(
    args: argparse.Namespace, root: ResolvedRoleConfig, subcall: ResolvedRoleConfig
) -> None:
    """Apply CLI flag overrides to resolved role configs (mutates in place)."""
    if args.backend is not None:
        root.backend = args.backend
    if args.model is not None:
        root.model = args.model
    if args.base_url is not None:
        root.base_url = args.base_url
    if args.sub_model is not None:
        subcall.model = args.sub_model


def _cascade_role_defaults(source: ResolvedRoleConfig, target: ResolvedRoleConfig) -> None:
    """Fill None fields in *target* from *source* (mutates target)."""
    if target.backend is None:
        target.backend = source.backend
    if target.model is None:
        target.model = source.model
    if target.base_url is None:
        target.base_url = source.base_url
    if target.api_key is None:
        target.api_key = source.api_key


def _optional_limit(value: float | None) -> float | None:
    """CLI convention: 0 disables a time limit."""
    if value is None or value == 0:
        return None
    return value


def _build_engine_config(
    args: argparse.Namespace, settings: SettingsConfig, sub_model: str | None
) -> EngineConfig:
    """Merge CLI flags > config settings > EngineConfig defaults.

    Raises
    ------
    ConfigError
        If the merged values are invalid.
    """
    values: dict[str, Any] = settings.engine_overrides()
    cli_values = {
        "max_iterations": args.max_iterations,
        "max_depth": args.max_depth,
        "max_subcalls": args.max_subcalls,
        "max_wall_time": args.timeout,
        "max_concurrent_subcalls": args.max_concurrent_subcalls,
        "subcall_timeout": args.subcall_timeout,
        "finalize_timeout": args.finalize_timeout,
        "fragment_tag": args.fragment_tag,
        "output_limit": args.output_limit,
        "max_tokens": args.max_tokens,
    }
    values.update({k: v for k, v in cli_values.items() if v is not None})
    for key in ("max_wall_time", "subcall_timeout", "finalize_timeout"):
        if key in values:
            values[key] = _optional_limit(values[key])
    return EngineConfig(
        **values,
        sub_model=sub_model,
        include_context_sample=not args.no_context_sample,
        compact_prompt=args.compact or (settings.compact is True),
    )


def _direct_answer(backend: LLMBackend, model: str, context: str | Path, query: str) -> int:
    """Answer small inputs with one plain completion."""
    text = context.read_text(encoding="utf-8") if isinstance(context, Path) else context
    messages = [
        {"role": "system", "content": _DIRECT_SYSTEM_PROMPT},
        {"role": "user", "content": f"Query: {query}\n\n## Document\n{text}"},
    ]
    result = backend.completion(messages, model)
    click.echo(click.style("\n\U00002705 ANSWER (direct)", bold=True, fg="green"))
    click.echo(result.text)
    return EXIT_OK


def _run(engine: Engine, context: str | Path, query: str) -> int:
    """Run the engine and print the outcome.

    Returns
    -------
    int
        Exit code.
    """
    click.echo(click.style("\U0001f680 STARTING DECOMPOSITION", bold=True, fg="cyan"))

    try:
        outcome = engine.process(context, query=query)
    except KeyboardInterrupt:
        click.echo(click.style("\n\U0000274c INTERRUPTED BY USER", bold=True, fg="red"), err=True)
        return EXIT_INTERRUPTED
    except RDEError as e:
        click.echo(
            click.style(f"\n\U0000274c ERROR: {describe_error(e)}", bold=True, fg="red"), err=True
        )
        return EXIT_ERROR

    if isinstance(outcome, Exhausted):
        banner = f"\n\U000026a0 EXHAUSTED ({outcome.reason}), best-effort answer"
        click.echo(click.style(banner, bold=True, fg="yellow"))
        exit_code = EXIT_EXHAUSTED
    else:
        click.echo(click.style("\n\U00002705 FINAL ANSWER", bold=True, fg="green"))
        exit_code = EXIT_OK
    click.echo(outcome.text)

    click.echo(click.style("\n\U0001f4ca STATISTICS", bold=True, fg="blue"))
    for key, value in engine.cost_summary().items():
        click.echo(f"  {key}: {value}")
    return exit_code


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="rde",
        description="RDE - Recursive Decomposition Engine for oversized inputs",
    )
    parser.add_argument(
        "--backend",
        choices=["anthropic", "openai", "openrouter", "huggingface", "ollama", "claude"],
        default=None,
        help="Model backend to use (default: anthropic)",
    )
    parser.add_argument("--model", default=None, help="Model identifier (required unless in config)")
    parser.add_argument("--base-url", help="Base URL override for OpenAI-compatible backends")
    parser.add_argument("--sub-model", help="Model for flat sub-calls (defaults to --model)")
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to YAML configuration file for per-role settings",
    )
    parser.add_argument(
        "--context-file",
        type=Path,
        required=True,
        help="Path to the input file, or '-' to read stdin",
    )
    parser.add_argument(
        "--query",
        default=None,
        help="Query to ask about the input (default: a general summary request)",
    )
    parser.add_argument("--max-iterations", type=int, default=None, help="Iteration budget (10)")
    parser.add_argument("--max-depth", type=int, default=None, help="Recursion ceiling (1)")
    parser.add_argument(
        "--max-subcalls", type=int, default=None, help="Sub-call budget for the whole tree (64)"
    )
    parser.add_argument(
        "--max-concurrent-subcalls",
        type=int,
        default=None,
        help="Sub-calls executing at once per invocation (4)",
    )
    parser.add_argument(
        "--subcall-timeout",
        type=float,
        default=None,
        help="Per-sub-call timeout in seconds, 0 disables (120)",
    )
    parser.add_argument(
        "--finalize-timeout",
        type=float,
        default=None,
        help="Timeout of the fallback answer request in seconds, 0 disables (120)",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Wall-clock ceiling in seconds, 0 disables (300)",
    )
    parser.add_argument(
        "--output-limit",
        type=int,
        default=None,
        help="Characters of fragment output shown to the model (10000)",
    )
    parser.add_argument(
        "--fragment-tag", default=None, help="Code fence tag of executable fragments (python)"
    )
    parser.add_argument(
        "--max-tokens", type=int, default=None, help="Maximum tokens per model response (4096)"
    )
    parser.add_argument(
        "--no-context-sample",
        action="store_true",
        help="Don't include document sample in initial prompt",
    )
    parser.add_argument("--compact", action="store_true", help="Use compact system prompt")
    parser.add_argument(
        "--threshold",
        type=int,
        default=None,
        help="Estimated tokens at or below which the query is answered directly",
    )
    parser.add_argument(
        "--trajectory-log",
        type=Path,
        default=None,
        help="Append each run's trajectory as one JSON line to this file",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable verbose output")
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {_get_version()}",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point.

    Returns
    -------
    int
        Exit code.
    """
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args.config) if args.config else RDEConfig()
    except (FileNotFoundError, ConfigError) as e:
        click.echo(f"Config error: {e}", err=True)
        return EXIT_ERROR

    root = resolve_role("root", config)
    subcall = resolve_role("subcall", config)
    _apply_cli_overrides(args, root, subcall)
    _cascade_role_defaults(root, subcall)
    if root.backend is None:
        root.backend = "anthropic"
    if subcall.backend is None:
        subcall.backend = root.backend

    if not root.model:
        click.echo(
            "Error: --model is required (neither CLI nor config provides a root model)", err=True
        )
        return EXIT_ERROR

    settings = config.settings
    try:
        engine_config = _build_engine_config(
            args, settings, subcall.model if subcall.model != root.model else None
        )
    except ConfigError as e:
        click.echo(f"Config error: {e}", err=True)
        return EXIT_ERROR

    try:
        context = _load_context(args.context_file)
    except (FileNotFoundError, OSError) as e:
        click.echo(f"Error: {e}", err=True)
        return EXIT_ERROR

    query = args.query or DEFAULT_QUERY
    click.echo(f"Query: {query}\n")

    try:
        root_backend = _create_backend(root, "root")
        sub_backend = (
            _create_backend(subcall, "subcall") if _roles_differ(subcall, root) else root_backend
        )
    except (ValueError, ImportError, FileNotFoundError) as e:
        click.echo(f"Error: {e}", err=True)
        return EXIT_ERROR

    threshold = args.threshold if args.threshold is not None else settings.threshold
    if threshold is not None and _context_tokens(context) <= threshold:
        try:
            return _direct_answer(root_backend, root.model, context, query)
        except KeyboardInterrupt:
            return EXIT_INTERRUPTED
        except Exception as e:
            click.echo(click.style(f"\n\U0000274c ERROR: {e}", bold=True, fg="red"), err=True)
            return EXIT_ERROR

    log_path = args.trajectory_log or (
        Path(settings.trajectory_log) if settings.trajectory_log else None
    )
    engine = Engine(
        root_backend,
        root.model,
        engine_config,
        sub_backend=sub_backend,
        sink=JSONLTrajectorySink(log_path) if log_path else None,
        verbose=args.verbose or (settings.verbose is True),
        root_system_prompt=root.system_prompt,
        sub_system_prompt=subcall.system_prompt,
    )
    return _run(engine, context, query)


def _get_version() -> str:
    from . import __version__

    return __version__
