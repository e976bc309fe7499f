"""Storage layer for the note index."""

from noteindex.storage.base import IndexRepository
from noteindex.storage.fts_index import FtsIndex
from noteindex.storage.link_repository import LinkRepository
from noteindex.storage.markdown_parser import MarkdownParser, scan_note_files
from noteindex.storage.note_repository import NoteIndexRepository
from noteindex.storage.tag_repository import TagRepository
from noteindex.storage.topic_repository import TopicRepository

__all__ = [
    "IndexRepository",
    "NoteIndexRepository",
    "FtsIndex",
    "LinkRepository",
    "TagRepository",
    "TopicRepository",
    "MarkdownParser",
    "scan_note_files",
]
