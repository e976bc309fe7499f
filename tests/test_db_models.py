"""Tests for schema creation and engine setup."""
import pytest
from sqlalchemy import create_engine, inspect, text

from noteindex.models.db_models import (
    SCHEMA_VERSION,
    create_schema,
    get_schema_version,
    init_db,
    rebuild_fts_index,
)
from noteindex.storage.note_repository import NoteIndexRepository

TABLES = {
    "notes", "topics", "note_topics", "aliases", "tags", "note_tags",
    "links", "link_rels", "schema_version", "index_meta", "duplicate_ids",
}


class TestSchema:
    def test_all_tables_created(self):
        engine = init_db(in_memory=True)
        names = set(inspect(engine).get_table_names())
        assert TABLES <= names
        assert "notes_fts" in names
        engine.dispose()

    def test_fts_triggers_created(self):
        engine = init_db(in_memory=True)
        with engine.connect() as conn:
            triggers = {
                row[0] for row in conn.execute(
                    text("SELECT name FROM sqlite_master WHERE type = 'trigger'")
                )
            }
        assert {"notes_ai", "notes_ad", "notes_au"} <= triggers
        engine.dispose()

    def test_create_schema_is_idempotent(self, tmp_path):
        engine = init_db(tmp_path / "index.db")
        create_schema(engine)
        create_schema(engine)
        with engine.connect() as conn:
            rows = conn.execute(text("SELECT COUNT(*) FROM schema_version")).scalar()
        assert rows == 1
        assert get_schema_version(engine) == SCHEMA_VERSION
        engine.dispose()

    def test_schema_version_of_empty_database(self):
        engine = create_engine("sqlite://")
        assert get_schema_version(engine) == 0
        engine.dispose()

    def test_missing_parent_directories_created(self, tmp_path):
        path = tmp_path / "a" / "b" / "index.db"
        engine = init_db(path)
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        assert path.exists()
        engine.dispose()

    def test_foreign_keys_enabled(self):
        engine = init_db(in_memory=True)
        with engine.connect() as conn:
            assert conn.execute(text("PRAGMA foreign_keys")).scalar() == 1
        engine.dispose()

    def test_rebuild_fts_index_counts_notes(self, repository, make_note):
        repository.upsert_batch([(make_note(), "h", f"{i}.md") for i in range(4)])
        assert rebuild_fts_index(repository.engine) == 4


class TestExternalEngine:
    def test_repository_creates_schema_on_given_engine(self, make_note):
        engine = init_db(in_memory=True)
        repo = NoteIndexRepository(engine=engine)
        note = make_note(topics=["t"])
        repo.upsert(note, "h", "n.md")
        assert repo.in_memory
        assert repo.get(note.id).topic_paths == ["t"]
        repo.close()
