"""Tests for the exception hierarchy."""
from noteindex.exceptions import (
    DatabaseCorruptionError,
    DuplicateIdError,
    ErrorCode,
    ParseError,
    QueryError,
    StorageError,
)


class TestNoteIndexError:
    def test_to_dict(self):
        err = QueryError("Empty search query", query="  ", code=ErrorCode.EMPTY_QUERY)
        data = err.to_dict()
        assert data["error"] == "QueryError"
        assert data["code"] == 5003
        assert data["code_name"] == "EMPTY_QUERY"
        assert data["details"] == {"query": "  "}

    def test_str_includes_details(self):
        err = StorageError("write failed", operation="upsert", path="a.md")
        assert str(err) == "[STORAGE_READ_FAILED] write failed (operation=upsert, path=a.md)"

    def test_str_without_details(self):
        assert str(QueryError("bad")) == "[SEARCH_INVALID_QUERY] bad"


class TestParseError:
    def test_kind_from_code(self):
        assert ParseError("x", code=ErrorCode.INVALID_ENCODING).kind == "encoding"
        assert ParseError("x", code=ErrorCode.FILE_READ_FAILED).kind == "io"
        assert ParseError("x", code=ErrorCode.MISSING_REQUIRED_FIELD).kind == "parse"

    def test_original_error_truncated(self):
        err = ParseError("x", path="a.md", original_error=ValueError("y" * 500))
        assert len(err.details["original_error"]) == 200
        assert err.details["path"] == "a.md"


class TestDuplicateIdError:
    def test_message_names_both_paths(self):
        err = DuplicateIdError("01ABC", "b.md", "a.md")
        assert "b.md" in err.message
        assert "a.md" in err.message
        assert err.details == {"note_id": "01ABC", "path": "b.md", "first_path": "a.md"}


class TestDatabaseCorruptionError:
    def test_recovery_details(self):
        err = DatabaseCorruptionError("corrupt", recovered=True, backup_path="/tmp/x.bak")
        assert err.operation == "database_check"
        assert err.details["recovered"] is True
        assert err.details["backup_path"] == "/tmp/x.bak"
        assert isinstance(err, StorageError)
