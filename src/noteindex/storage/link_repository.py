"""Repository for link and backlink queries."""
import logging
from typing import List, Optional, Tuple

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from noteindex.models.db_models import DBLink, DBLinkRel, DBNote
from noteindex.models.schema import RelCount
from noteindex.storage.base import read_session

logger = logging.getLogger(__name__)


class LinkRepository:
    """Queries over the typed link graph.

    Links are stored per source note; targets may not exist in the index.
    """

    def __init__(self, session_factory):
        """Initialize the link repository.

        Args:
            session_factory: SQLAlchemy session factory for database operations.
        """
        self.session_factory = session_factory

    def find_source_ids(self, target_id: str, rel: Optional[str] = None) -> List[str]:
        """IDs of notes linking to ``target_id``, ordered by title.

        Args:
            target_id: Canonical id of the linked-to note.
            rel: When given, only links carrying this relationship count.
        """
        sources = select(DBLink.source_id).where(DBLink.target_id == target_id)
        if rel is not None:
            sources = sources.join(DBLinkRel, DBLinkRel.link_id == DBLink.id).where(
                DBLinkRel.rel == rel
            )
        with read_session(self.session_factory, "backlinks") as session:
            rows = session.execute(
                select(DBNote.id)
                .where(DBNote.id.in_(sources))
                .order_by(func.lower(DBNote.title), DBNote.id)
            ).all()
        return [row[0] for row in rows]

    def get_rel_counts(self) -> List[RelCount]:
        """Number of links carrying each relationship label."""
        with read_session(self.session_factory, "rel_counts") as session:
            rows = session.execute(
                select(DBLinkRel.rel, func.count(DBLinkRel.link_id))
                .group_by(DBLinkRel.rel)
                .order_by(DBLinkRel.rel)
            ).all()
        return [RelCount(rel=rel, count=count) for rel, count in rows]

    def find_broken(self) -> List[Tuple[str, str, str]]:
        """``(source_id, source_path, target_id)`` for links to missing notes."""
        target = DBNote.__table__.alias("target")
        with read_session(self.session_factory, "find_broken_links") as session:
            rows = session.execute(
                select(DBLink.source_id, DBNote.path, DBLink.target_id)
                .join(DBNote, DBNote.id == DBLink.source_id)
                .where(DBLink.target_id.not_in(select(target.c.id)))
                .order_by(DBNote.path, DBLink.target_id)
            ).all()
        return [(row[0], row[1], row[2]) for row in rows]

    @staticmethod
    def delete_broken(session: Session) -> int:
        """Delete links whose target is not indexed; rels cascade.

        Runs inside the caller's transaction.
        """
        result = session.execute(
            delete(DBLink).where(DBLink.target_id.not_in(select(DBNote.id)))
        )
        return result.rowcount or 0
