"""Tests for reading notes and scanning the notes tree."""
import hashlib
import os

import pytest

from noteindex.exceptions import ErrorCode, ParseError, StorageError
from noteindex.storage.markdown_parser import MarkdownParser, scan_note_files

NOTE_ID = "01HQ3K5M7NXJK4QZPW8V2R6T9Y"
TARGET_ID = "01HQ4A2R9PXJK4QZPW8V2R6T9Y"

VALID = f"""---
id: {NOTE_ID}
title: API Design
created: 2024-01-15T10:30:00Z
modified: 2024-01-16T08:00:00Z
description: How we shape HTTP APIs
topics: [software/architecture]
aliases: [api-guide]
tags: [draft, api]
links:
  - id: {TARGET_ID}
    rel: [parent]
    note: overview
---
Body text about resources.
"""


@pytest.fixture
def parser():
    return MarkdownParser()


class TestParsing:
    """Tests for frontmatter parsing."""

    def test_parses_all_fields(self, parser):
        parsed = parser.parse_bytes(VALID.encode("utf-8"), "api.md")
        note = parsed.note
        assert note.id == NOTE_ID
        assert note.title == "API Design"
        assert note.description == "How we shape HTTP APIs"
        assert note.topic_paths == ["software/architecture"]
        assert note.aliases == ["api-guide"]
        assert note.tag_names == ["draft", "api"]
        assert note.links[0].target_id == TARGET_ID
        assert note.links[0].rels == ["parent"]
        assert note.links[0].context == "overview"
        assert parsed.body.strip() == "Body text about resources."

    def test_hash_is_over_raw_bytes(self, parser):
        data = b"\xef\xbb\xbf" + VALID.encode("utf-8")
        parsed = parser.parse_bytes(data, "api.md")
        assert parsed.content_hash == hashlib.sha256(data).hexdigest()
        assert parsed.note.id == NOTE_ID

    def test_crlf_line_endings_accepted(self, parser):
        data = VALID.replace("\n", "\r\n").encode("utf-8")
        assert parser.parse_bytes(data, "api.md").note.title == "API Design"

    def test_read_note_from_disk(self, parser, tmp_path):
        path = tmp_path / "api.md"
        path.write_text(VALID, encoding="utf-8")
        parsed = parser.read_note(path, display_path="api.md")
        assert parsed.note.id == NOTE_ID

    def test_render_round_trip(self, parser):
        parsed = parser.parse_bytes(VALID.encode("utf-8"))
        rendered = parser.render_to_markdown(parsed.note, parsed.body)
        again = parser.parse_note(rendered)
        assert again.note == parsed.note
        assert again.body.strip() == parsed.body.strip()


class TestParseFailures:
    """Tests for the ways a file can fail to parse."""

    def test_missing_file(self, parser, tmp_path):
        with pytest.raises(ParseError) as exc_info:
            parser.read_note(tmp_path / "gone.md", display_path="gone.md")
        assert exc_info.value.code == ErrorCode.FILE_READ_FAILED
        assert exc_info.value.kind == "io"
        assert exc_info.value.path == "gone.md"

    def test_no_frontmatter(self, parser):
        with pytest.raises(ParseError) as exc_info:
            parser.parse_bytes(b"# Just a heading\n", "plain.md")
        assert exc_info.value.code == ErrorCode.MISSING_FRONTMATTER

    def test_unterminated_frontmatter(self, parser):
        with pytest.raises(ParseError) as exc_info:
            parser.parse_bytes(f"---\nid: {NOTE_ID}\ntitle: x\n".encode(), "open.md")
        assert exc_info.value.code == ErrorCode.MISSING_FRONTMATTER

    def test_malformed_yaml(self, parser):
        data = b"---\nid: [unclosed\ntitle: x\n---\nbody\n"
        with pytest.raises(ParseError) as exc_info:
            parser.parse_bytes(data, "bad.md")
        assert exc_info.value.code == ErrorCode.PARSE_FAILED
        assert exc_info.value.kind == "parse"

    def test_missing_required_field(self, parser):
        data = f"---\nid: {NOTE_ID}\ntitle: No dates\n---\nbody\n".encode()
        with pytest.raises(ParseError) as exc_info:
            parser.parse_bytes(data, "nodates.md")
        assert exc_info.value.code == ErrorCode.MISSING_REQUIRED_FIELD
        assert "created" in exc_info.value.message

    def test_invalid_value(self, parser):
        data = VALID.replace("tags: [draft, api]", "tags: [not valid]").encode()
        with pytest.raises(ParseError) as exc_info:
            parser.parse_bytes(data, "badtag.md")
        assert exc_info.value.code == ErrorCode.PARSE_FAILED

    def test_utf16_rejected(self, parser):
        with pytest.raises(ParseError) as exc_info:
            parser.parse_bytes(VALID.encode("utf-16"), "wide.md")
        assert exc_info.value.code == ErrorCode.INVALID_ENCODING
        assert exc_info.value.kind == "encoding"

    def test_invalid_utf8_rejected(self, parser):
        with pytest.raises(ParseError) as exc_info:
            parser.parse_bytes(VALID.encode("utf-8") + b"\xff\xfe\xfd", "broken.md")
        assert exc_info.value.code == ErrorCode.INVALID_ENCODING

    def test_lone_cr_rejected(self, parser):
        with pytest.raises(ParseError) as exc_info:
            parser.parse_bytes(VALID.replace("\n", "\r").encode(), "mac.md")
        assert exc_info.value.code == ErrorCode.INVALID_ENCODING


class TestScanNoteFiles:
    """Tests for enumerating note files."""

    def test_sorted_relative_posix_paths(self, tmp_path):
        (tmp_path / "b").mkdir()
        (tmp_path / "a" / "deep").mkdir(parents=True)
        for rel in ("z.md", "b/note.md", "a/deep/x.md", "a/first.md"):
            (tmp_path / rel).write_text("x")
        assert scan_note_files(tmp_path) == ["a/deep/x.md", "a/first.md", "b/note.md", "z.md"]

    def test_skips_hidden_and_other_extensions(self, tmp_path):
        (tmp_path / ".git").mkdir()
        (tmp_path / ".git" / "inside.md").write_text("x")
        (tmp_path / ".hidden.md").write_text("x")
        (tmp_path / "notes.txt").write_text("x")
        (tmp_path / "keep.md").write_text("x")
        assert scan_note_files(tmp_path) == ["keep.md"]

    @pytest.mark.skipif(not hasattr(os, "symlink"), reason="symlinks unavailable")
    def test_follows_symlinks_once(self, tmp_path):
        real = tmp_path / "real"
        real.mkdir()
        (real / "n.md").write_text("x")
        (real / "loop").symlink_to(real, target_is_directory=True)
        assert scan_note_files(real) == ["n.md"]

    def test_missing_root(self, tmp_path):
        with pytest.raises(StorageError) as exc_info:
            scan_note_files(tmp_path / "missing")
        assert exc_info.value.code == ErrorCode.NOTES_DIR_NOT_FOUND
