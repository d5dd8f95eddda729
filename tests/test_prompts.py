"""Unit tests for rde.prompts module."""

from __future__ import annotations

from rde.prompts import (
    SUB_SYSTEM_PROMPT,
    format_results,
    get_corrective_prompt,
    get_finalizing_prompt,
    get_sub_system_prompt,
    get_system_prompt,
    get_user_prompt,
)

# ---------------------------------------------------------------------------
# get_system_prompt()
# ---------------------------------------------------------------------------


class TestGetSystemPrompt:
    """Tests for get_system_prompt()."""

    def test_returns_full_prompt_by_default(self) -> None:
        assert len(get_system_prompt()) > 1000

    def test_full_prompt_longer_than_compact(self) -> None:
        assert len(get_system_prompt(compact=False)) > len(get_system_prompt(compact=True))

    def test_full_prompt_contains_key_instructions(self) -> None:
        prompt = get_system_prompt()
        for name in ("CONTEXT", "FINAL", "FINAL_VAR", "llm_query_batched", "rlm_query", "[ERROR:"):
            assert name in prompt

    def test_compact_prompt_contains_key_instructions(self) -> None:
        prompt = get_system_prompt(compact=True)
        assert "CONTEXT" in prompt
        assert "FINAL" in prompt
        assert "llm_query" in prompt

    def test_placeholders_filled(self) -> None:
        for compact in (False, True):
            prompt = get_system_prompt(compact, fragment_tag="repl")
            assert "{tag}" not in prompt
            assert "{recursive}" not in prompt
            assert "```repl" in prompt

    def test_code_example_braces_kept(self) -> None:
        assert 'f"Summarize:\\n{c}"' in get_system_prompt()

    def test_recursion_unavailable_variant(self) -> None:
        prompt = get_system_prompt(can_recurse=False)
        assert "NOT available at this depth" in prompt
        assert "rlm_query(task: str" not in prompt


# ---------------------------------------------------------------------------
# Other prompts
# ---------------------------------------------------------------------------


class TestGetUserPrompt:
    """Tests for get_user_prompt()."""

    def test_includes_query_and_metadata(self) -> None:
        prompt = get_user_prompt("What are the main themes?", "Context ctx_1 (text)")
        assert prompt.startswith("Query: What are the main themes?")
        assert "## Document Metadata\nContext ctx_1 (text)" in prompt
        assert "FINAL" in prompt
        assert "Python code" in prompt

    def test_sample_section_optional(self) -> None:
        assert "## Document Sample" not in get_user_prompt("q", "meta")
        assert "## Document Sample\nhead" in get_user_prompt("q", "meta", "head")


class TestFixedPrompts:
    """Tests for the corrective, finalizing and sub-call prompts."""

    def test_corrective_names_tag(self) -> None:
        prompt = get_corrective_prompt("repl")
        assert prompt.startswith("Your reply did not contain a code block tagged `repl`")
        assert "```repl" in prompt

    def test_finalizing_reason(self) -> None:
        prompt = get_finalizing_prompt("time")
        assert prompt.startswith("You have run out of time.")
        assert "Code will no longer be executed" in prompt

    def test_sub_system_prompt(self) -> None:
        assert get_sub_system_prompt() == SUB_SYSTEM_PROMPT


class TestFormatResults:
    """Tests for format_results()."""

    def test_joins_blocks(self) -> None:
        assert format_results(["a", "b"]) == "Output:\na\n---\nb"

    def test_no_blocks(self) -> None:
        assert format_results([]) == "Output:\n(no output)"
