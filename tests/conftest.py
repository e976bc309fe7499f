"""Common test fixtures for the note index."""

from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest
import yaml

from noteindex.config import IndexConfig
from noteindex.models.schema import Note, generate_id
from noteindex.services.index_builder import IndexBuilder
from noteindex.storage.note_repository import NoteIndexRepository

CREATED = "2024-01-15T10:30:00Z"


@pytest.fixture
def notes_dir(tmp_path):
    """Empty notes root."""
    path = tmp_path / "notes"
    path.mkdir()
    return path


@pytest.fixture
def test_config(tmp_path, notes_dir):
    """Configuration pointing at temporary paths."""
    return IndexConfig(
        base_dir=tmp_path,
        notes_dir=notes_dir,
        database_path=tmp_path / "db" / "index.db",
        in_memory_db=False,
    )


@pytest.fixture
def repository():
    """In-memory index store."""
    repo = NoteIndexRepository.open(in_memory=True)
    yield repo
    repo.close()


@pytest.fixture
def file_repository(test_config):
    """Index store backed by a temporary SQLite file."""
    repo = NoteIndexRepository.open(config=test_config)
    yield repo
    repo.close()


@pytest.fixture
def builder(repository, notes_dir):
    """Index builder over the temporary notes root and in-memory store."""
    return IndexBuilder(repository, notes_dir=notes_dir)


@pytest.fixture
def write_note(notes_dir):
    """Write a note file and return its id.

    Usage:
        note_id = write_note("software/api.md", "API Design", topics=["software"])
    """

    def _write(
        rel_path: str,
        title: Optional[str] = "Untitled",
        note_id: Optional[str] = None,
        body: str = "Body text.",
        **fields: Any,
    ) -> str:
        note_id = note_id or generate_id()
        metadata: Dict[str, Any] = {"id": note_id}
        if title is not None:
            metadata["title"] = title
        metadata["created"] = fields.pop("created", CREATED)
        metadata["modified"] = fields.pop("modified", CREATED)
        metadata.update({k: v for k, v in fields.items() if v is not None})

        path = notes_dir / rel_path
        path.parent.mkdir(parents=True, exist_ok=True)
        text = "---\n" + yaml.safe_dump(metadata, sort_keys=False) + "---\n" + body + "\n"
        path.write_text(text, encoding="utf-8")
        return note_id

    return _write


@pytest.fixture
def make_note():
    """Build a ``Note`` with sensible defaults."""

    def _make(
        title: str = "Untitled",
        note_id: Optional[str] = None,
        topics: Optional[List[str]] = None,
        tags: Optional[List[str]] = None,
        aliases: Optional[List[str]] = None,
        links: Optional[List[Dict[str, Any]]] = None,
        description: Optional[str] = None,
    ) -> Note:
        return Note(
            id=note_id or generate_id(),
            title=title,
            description=description,
            created=CREATED,
            modified=CREATED,
            topics=topics or [],
            tags=tags or [],
            aliases=aliases or [],
            links=links or [],
        )

    return _make


def note_ids(notes) -> List[str]:
    return [n.id for n in notes]


@pytest.fixture
def ids_of():
    """Extract ids from a list of notes, preserving order."""
    return note_ids
