"""Repository for tag queries."""
import logging
from typing import List

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from noteindex.models.db_models import DBNote, DBTag, note_tags
from noteindex.models.schema import TagCount
from noteindex.storage.base import read_session

logger = logging.getLogger(__name__)


class TagRepository:
    """Read-side queries over tags.

    Tags are written by the note repository's upsert; this class only
    answers questions about them.
    """

    def __init__(self, session_factory):
        """Initialize the tag repository.

        Args:
            session_factory: SQLAlchemy session factory for database operations.
        """
        self.session_factory = session_factory

    def find_note_ids_by_tags(self, tag_names: List[str]) -> List[str]:
        """Find notes carrying ALL of the given tags, ordered by title.

        The intersection is computed by the database in one statement:
        notes are grouped and kept when they matched every distinct name.

        Args:
            tag_names: Normalised tag names; duplicates are ignored.
        """
        wanted = sorted(set(tag_names))
        matching = (
            select(note_tags.c.note_id)
            .join(DBTag, note_tags.c.tag_id == DBTag.id)
            .where(DBTag.name.in_(wanted))
            .group_by(note_tags.c.note_id)
            .having(func.count(func.distinct(DBTag.name)) == len(wanted))
        )
        with read_session(self.session_factory, "list_by_tags") as session:
            rows = session.execute(
                select(DBNote.id)
                .where(DBNote.id.in_(matching))
                .order_by(func.lower(DBNote.title), DBNote.id)
            ).all()
        return [row[0] for row in rows]

    def get_counts(self) -> List[TagCount]:
        """Usage count of every referenced tag, sorted by name."""
        with read_session(self.session_factory, "tag_counts") as session:
            rows = session.execute(
                select(DBTag.name, func.count(note_tags.c.note_id))
                .join(note_tags, DBTag.id == note_tags.c.tag_id)
                .group_by(DBTag.id, DBTag.name)
                .order_by(DBTag.name)
            ).all()
        return [TagCount(tag=name, count=count) for name, count in rows]

    def get_all(self) -> List[str]:
        """Every tag name currently in use, sorted."""
        with read_session(self.session_factory, "all_tags") as session:
            rows = session.execute(
                select(DBTag.name)
                .where(DBTag.id.in_(select(note_tags.c.tag_id)))
                .order_by(DBTag.name)
            ).all()
        return [row[0] for row in rows]

    @staticmethod
    def delete_unused(session: Session) -> int:
        """Delete tags that are not associated with any notes.

        Runs inside the caller's transaction.

        Returns:
            Number of tags deleted.
        """
        result = session.execute(
            delete(DBTag).where(DBTag.id.not_in(select(note_tags.c.tag_id)))
        )
        return result.rowcount or 0
