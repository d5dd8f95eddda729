"""Unit tests for rde.context (Context Store, backings and views)."""

from __future__ import annotations

import re
import threading
from pathlib import Path

import pytest

from rde.context import ContextStore, ContextView, LazyContext, StringContext
from rde.errors import UnsupportedContent

from .conftest import SAMPLE_TEXT, make_log_text

# =====================================================================
# ContextStore.ingest
# =====================================================================


class TestIngest:
    """Tests for registering inputs."""

    def test_string_metadata(self, store: ContextStore) -> None:
        artifact = store.ingest(SAMPLE_TEXT)
        assert artifact.id == "ctx_1"
        assert artifact.length == len(SAMPLE_TEXT)
        assert artifact.byte_length == len(SAMPLE_TEXT.encode("utf-8"))
        assert artifact.line_count == 15
        assert artifact.preview == SAMPLE_TEXT[:200]
        assert artifact.source == "memory"
        assert artifact.declared_kind == "text"

    def test_ids_are_sequential_and_unique(self, store: ContextStore) -> None:
        ids = [store.ingest(f"doc {i}").id for i in range(3)]
        assert ids == ["ctx_1", "ctx_2", "ctx_3"]
        assert len(store) == 3

    def test_unicode_lengths(self, store: ContextStore) -> None:
        artifact = store.ingest("héllo")
        assert artifact.length == 5
        assert artifact.byte_length == 6

    def test_utf8_bytes_accepted(self, store: ContextStore) -> None:
        artifact = store.ingest("naïve\n".encode())
        assert store.materialize(artifact.id) == "naïve\n"

    def test_bytes_with_nul_rejected(self, store: ContextStore) -> None:
        with pytest.raises(UnsupportedContent, match="binary"):
            store.ingest(b"abc\x00def")

    def test_invalid_utf8_rejected(self, store: ContextStore) -> None:
        with pytest.raises(UnsupportedContent, match="UTF-8"):
            store.ingest(b"\xff\xfe\xfa")

    def test_truncated_utf8_bytes_rejected(self, store: ContextStore) -> None:
        with pytest.raises(UnsupportedContent, match="UTF-8"):
            store.ingest("café".encode()[:-1])

    def test_text_with_nul_rejected(self, store: ContextStore) -> None:
        with pytest.raises(UnsupportedContent, match="binary"):
            store.ingest("header\n\x00\x01payload")
        assert len(store) == 0

    @pytest.mark.parametrize("value", [42, 3.5, ["a", "b"], {"k": "v"}, None])
    def test_unsupported_types_rejected(self, store: ContextStore, value: object) -> None:
        with pytest.raises(UnsupportedContent):
            store.ingest(value)  # type: ignore[arg-type]

    def test_rejected_input_registers_nothing(self, store: ContextStore) -> None:
        with pytest.raises(UnsupportedContent):
            store.ingest(b"\x00")
        assert len(store) == 0

    def test_declared_kind_wins(self, store: ContextStore) -> None:
        artifact = store.ingest("plain words", declared_kind="code")
        assert artifact.declared_kind == "code"

    def test_empty_string(self, store: ContextStore) -> None:
        artifact = store.ingest("")
        assert artifact.length == 0
        assert artifact.line_count == 0
        assert artifact.preview == ""

    def test_concurrent_ingest_yields_unique_ids(self, store: ContextStore) -> None:
        ids: list[str] = []
        lock = threading.Lock()

        def worker(n: int) -> None:
            artifact_id = store.ingest(f"document {n}").id
            with lock:
                ids.append(artifact_id)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(16)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(set(ids)) == 16


class TestIngestFiles:
    """Tests for memory-mapped file inputs."""

    def test_path_is_memory_mapped(self, store: ContextStore, tmp_text_file: Path) -> None:
        artifact = store.ingest(tmp_text_file)
        assert artifact.source == str(tmp_text_file)
        assert artifact.length == len(SAMPLE_TEXT.encode("utf-8"))
        assert artifact.line_count == 15
        assert store.slice(artifact.id, 0, 9) == "Chapter 1"

    def test_suffix_sets_kind(self, store: ContextStore, tmp_path: Path) -> None:
        p = tmp_path / "data.json"
        p.write_text('{"a": 1}', encoding="utf-8")
        assert store.ingest(p).declared_kind == "json"

    def test_binary_file_rejected(self, store: ContextStore, tmp_binary_file: Path) -> None:
        with pytest.raises(UnsupportedContent):
            store.ingest(tmp_binary_file)

    @pytest.mark.parametrize(
        "tail",
        [b"\x00\x01\x02\xff\xfe" * 100, b"\xff\xfe" * 10],
        ids=["nul", "invalid-utf8"],
    )
    def test_binary_past_first_block_rejected(
        self, store: ContextStore, tmp_path: Path, tail: bytes
    ) -> None:
        p = tmp_path / "mostly_text.log"
        p.write_bytes(b"a" * 10_000 + tail)
        with pytest.raises(UnsupportedContent):
            store.ingest(p)
        assert len(store) == 0

    def test_multibyte_split_across_chunks_accepted(
        self, store: ContextStore, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr("rde.context._LINE_COUNT_CHUNK", 4)
        p = tmp_path / "accents.txt"
        p.write_text("aé" * 10, encoding="utf-8")
        artifact = store.ingest(p)
        assert artifact.byte_length == 30

    def test_missing_file_rejected(self, store: ContextStore, tmp_path: Path) -> None:
        with pytest.raises(UnsupportedContent, match="not found"):
            store.ingest(tmp_path / "missing.txt")

    def test_empty_file(self, store: ContextStore, tmp_empty_file: Path) -> None:
        artifact = store.ingest(tmp_empty_file)
        assert artifact.length == 0
        assert artifact.line_count == 0
        assert store.slice(artifact.id, 0, 10) == ""


class TestKindSniffing:
    """Tests for best-effort content type detection."""

    @pytest.mark.parametrize(
        ("text", "kind"),
        [
            ('{"service": "api", "errors": []}', "json"),
            ("[1, 2, 3]", "json"),
            ("# Title\n\nSome prose.\n", "markdown"),
            ("id,name,score\n1,ann,3\n2,bob,4\n", "csv"),
            (make_log_text(2_000), "log"),
            ("just some words\nand more words\n", "text"),
        ],
    )
    def test_sniffed_kind(self, store: ContextStore, text: str, kind: str) -> None:
        assert store.ingest(text).declared_kind == kind


# =====================================================================
# Accessors
# =====================================================================


class TestAccessors:
    """Tests for slice/preview/describe/sample."""

    def test_slice(self, store: ContextStore, sample_artifact_id: str) -> None:
        assert store.slice(sample_artifact_id, 0, 9) == "Chapter 1"
        assert store.slice(sample_artifact_id, -38) == SAMPLE_TEXT[-38:]

    def test_preview_is_deterministic(self, store: ContextStore) -> None:
        artifact = store.ingest(make_log_text())
        first = store.preview(artifact.id, 50)
        assert first == store.preview(artifact.id, 50)
        assert first == make_log_text()[:50]

    def test_preview_negative_is_empty(self, store: ContextStore, sample_artifact_id: str) -> None:
        assert store.preview(sample_artifact_id, -5) == ""

    def test_describe_is_metadata_only(self, store: ContextStore) -> None:
        text = make_log_text(120_000, needle="NEEDLE-XYZ", needle_at=50_000)
        artifact = store.ingest(text)
        summary = store.describe(artifact.id)
        assert summary.startswith("Context ctx_1 (log, source: memory)")
        assert "120,000 bytes" in summary
        assert "lines" in summary
        assert "NEEDLE-XYZ" not in summary
        assert len(summary) < 600

    def test_describe_escapes_newlines(self, store: ContextStore) -> None:
        artifact = store.ingest("a\nb\nc")
        assert "Preview: a\\nb\\nc" in store.describe(artifact.id)

    def test_sample_is_bounded(self, store: ContextStore) -> None:
        artifact = store.ingest(make_log_text(120_000))
        sample = store.sample(artifact.id)
        assert sample.startswith("Beginning (offset 0):")
        assert "End (offset 119,500)" in sample
        assert len(sample) < 500 * 5 + 300

    def test_sample_of_small_input_is_whole(self, store: ContextStore) -> None:
        artifact = store.ingest("tiny")
        assert store.sample(artifact.id) == "Full content preview:\ntiny"

    def test_search_and_findall(self, store: ContextStore, sample_artifact_id: str) -> None:
        match = store.search(sample_artifact_id, r"Chapter (\d): Results")
        assert match is not None
        assert match.group(1) == "3"
        assert store.findall(sample_artifact_id, r"Chapter \d") == [
            "Chapter 1",
            "Chapter 2",
            "Chapter 3",
            "Chapter 4",
        ]

    def test_unknown_id_raises_keyerror(self, store: ContextStore) -> None:
        with pytest.raises(KeyError):
            store.get("ctx_99")
        with pytest.raises(KeyError):
            store.slice("ctx_99", 0, 1)

    def test_close_forgets_artifacts(self, tmp_text_file: Path) -> None:
        with ContextStore() as s:
            artifact_id = s.ingest(tmp_text_file).id
            assert artifact_id in s
        assert artifact_id not in s
        assert s.artifacts() == []


# =====================================================================
# ContextView
# =====================================================================


class TestContextView:
    """Tests for the read-only handle exposed as CONTEXT."""

    @pytest.fixture()
    def view(self, store: ContextStore, sample_artifact_id: str) -> ContextView:
        return store.view(sample_artifact_id)

    def test_len(self, view: ContextView) -> None:
        assert len(view) == len(SAMPLE_TEXT)

    def test_slicing(self, view: ContextView) -> None:
        assert view[0:9] == "Chapter 1"
        assert view[:9:2] == SAMPLE_TEXT[:9:2]

    def test_int_index(self, view: ContextView) -> None:
        assert view[0] == "C"
        assert view[-1] == "\n"
        with pytest.raises(IndexError):
            view[len(SAMPLE_TEXT)]

    def test_contains(self, view: ContextView) -> None:
        assert "six months" in view
        assert "seven months" not in view

    def test_str_materializes(self, view: ContextView) -> None:
        assert str(view) == SAMPLE_TEXT

    def test_repr_is_short(self, view: ContextView) -> None:
        assert repr(view) == f"<CONTEXT ctx_1 kind=text length={len(SAMPLE_TEXT):,}>"

    def test_lines_and_splitlines(self, view: ContextView) -> None:
        assert next(iter(view.lines())) == "Chapter 1: Introduction"
        assert view.splitlines() == SAMPLE_TEXT.splitlines()

    def test_chunk_and_preview(self, view: ContextView) -> None:
        assert view.chunk(0, 7) == "Chapter"
        assert view.preview(7) == "Chapter"

    def test_findall_with_flags(self, view: ContextView) -> None:
        assert view.findall(r"^chapter \d", re.IGNORECASE | re.MULTILINE) == [
            "Chapter 1",
            "Chapter 2",
            "Chapter 3",
            "Chapter 4",
        ]

    def test_view_of_unknown_id_raises(self, store: ContextStore) -> None:
        with pytest.raises(KeyError):
            store.view("ctx_42")

    def test_reingest_view_from_same_store(
        self, store: ContextStore, view: ContextView
    ) -> None:
        assert store.ingest(view).id == view.id
        assert len(store) == 1

    def test_ingest_view_from_other_store_copies(self, view: ContextView) -> None:
        with ContextStore() as other:
            artifact = other.ingest(view)
            assert other.materialize(artifact.id) == SAMPLE_TEXT


# =====================================================================
# Backings
# =====================================================================


class TestLazyContext:
    """Tests for the memory-mapped backing."""

    def test_len_is_bytes(self, tmp_path: Path) -> None:
        p = tmp_path / "u.txt"
        p.write_text("héllo", encoding="utf-8")
        with LazyContext(p) as ctx:
            assert len(ctx) == 6

    def test_slice_and_str(self, tmp_text_file: Path) -> None:
        with LazyContext(tmp_text_file) as ctx:
            assert ctx[0:9] == "Chapter 1"
            assert str(ctx) == SAMPLE_TEXT

    def test_search_returns_bytes_match(self, tmp_text_file: Path) -> None:
        with LazyContext(tmp_text_file) as ctx:
            match = ctx.search(r"Chapter 3")
            assert match is not None
            assert match.group(0) == b"Chapter 3"

    def test_findall_decodes(self, tmp_text_file: Path) -> None:
        with LazyContext(tmp_text_file) as ctx:
            assert ctx.findall(r"Chapter \d")[:2] == ["Chapter 1", "Chapter 2"]

    def test_lines(self, tmp_text_file: Path) -> None:
        with LazyContext(tmp_text_file) as ctx:
            assert list(ctx.lines()) == SAMPLE_TEXT.splitlines()
            assert ctx.count_lines() == 15

    def test_count_lines_without_trailing_newline(self, tmp_path: Path) -> None:
        p = tmp_path / "t.txt"
        p.write_text("a\nb", encoding="utf-8")
        with LazyContext(p) as ctx:
            assert ctx.count_lines() == 2

    def test_empty_file(self, tmp_empty_file: Path) -> None:
        with LazyContext(tmp_empty_file) as ctx:
            assert len(ctx) == 0
            assert ctx[0:5] == ""
            assert str(ctx) == ""
            assert list(ctx.lines()) == []
            assert ctx.search("x") is None


class TestStringContext:
    """Tests for the in-memory backing."""

    def test_api_parity(self) -> None:
        ctx = StringContext("a\nb\n")
        assert len(ctx) == 4
        assert ctx.count_lines() == 2
        assert list(ctx.lines()) == ["a", "b"]
        assert ctx.chunk(2, 1) == "b"
        assert "b" in ctx
        assert 1 not in ctx
