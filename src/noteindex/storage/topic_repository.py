"""Repository for topic queries."""
import logging
from typing import List, Tuple

from sqlalchemy import and_, delete, func, or_, select
from sqlalchemy.orm import Session, aliased

from noteindex.models.db_models import DBNote, DBTopic, note_topics
from noteindex.models.schema import TOPIC_SEPARATOR, TopicCount
from noteindex.storage.base import read_session

logger = logging.getLogger(__name__)

# The character sorting immediately after the separator ('/' + 1)
_SEPARATOR_SUCCESSOR = chr(ord(TOPIC_SEPARATOR) + 1)


def descendant_bounds(topic_path: str) -> Tuple[str, str]:
    """Exclusive string bounds covering every descendant of ``topic_path``.

    Every path starting with ``topic/`` sorts strictly between
    ``topic/`` and ``topic0``, which lets the unique index on
    ``topics.path`` answer the prefix query as a range scan.
    """
    return topic_path + TOPIC_SEPARATOR, topic_path + _SEPARATOR_SUCCESSOR


def topic_match_clause(path_column, topic_path: str, include_descendants: bool):
    """WHERE clause selecting a topic, optionally with its descendants."""
    if not include_descendants:
        return path_column == topic_path
    lower, upper = descendant_bounds(topic_path)
    return or_(
        path_column == topic_path,
        and_(path_column > lower, path_column < upper),
    )


class TopicRepository:
    """Read-side queries over topics and their note associations."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    def find_note_ids(self, topic_path: str, include_descendants: bool = False) -> List[str]:
        """IDs of notes filed under ``topic_path``, ordered by title.

        Args:
            topic_path: A normalised topic path.
            include_descendants: Also match every topic below ``topic_path``.
        """
        matching = (
            select(note_topics.c.note_id)
            .join(DBTopic, DBTopic.id == note_topics.c.topic_id)
            .where(topic_match_clause(DBTopic.path, topic_path, include_descendants))
        )
        with read_session(self.session_factory, "list_by_topic") as session:
            rows = session.execute(
                select(DBNote.id)
                .where(DBNote.id.in_(matching))
                .order_by(func.lower(DBNote.title), DBNote.id)
            ).all()
        return [row[0] for row in rows]

    def get_counts(self) -> List[TopicCount]:
        """Counts for every referenced topic.

        ``exact_count`` counts notes filed directly under the topic;
        ``total_count`` counts distinct notes under it or any descendant.
        """
        inner_topic = aliased(DBTopic)
        inner_link = note_topics.alias("inner_nt")
        total = (
            select(func.count(func.distinct(inner_link.c.note_id)))
            .select_from(inner_link.join(inner_topic, inner_topic.id == inner_link.c.topic_id))
            .where(
                or_(
                    inner_topic.path == DBTopic.path,
                    and_(
                        inner_topic.path > DBTopic.path + TOPIC_SEPARATOR,
                        inner_topic.path < DBTopic.path + _SEPARATOR_SUCCESSOR,
                    ),
                )
            )
            .scalar_subquery()
        )

        with read_session(self.session_factory, "topic_counts") as session:
            rows = session.execute(
                select(DBTopic.path, func.count(note_topics.c.note_id), total)
                .join(note_topics, DBTopic.id == note_topics.c.topic_id)
                .group_by(DBTopic.id, DBTopic.path)
                .order_by(DBTopic.path)
            ).all()

        return [
            TopicCount(topic=path, exact_count=exact, total_count=total_count)
            for path, exact, total_count in rows
        ]

    def get_all(self) -> List[str]:
        """Every topic path currently in use, sorted."""
        with read_session(self.session_factory, "all_topics") as session:
            rows = session.execute(
                select(DBTopic.path)
                .where(DBTopic.id.in_(select(note_topics.c.topic_id)))
                .order_by(DBTopic.path)
            ).all()
        return [row[0] for row in rows]

    def find_unfiled(self) -> List[Tuple[str, str]]:
        """``(id, path)`` of notes without any topic."""
        with read_session(self.session_factory, "find_unfiled") as session:
            rows = session.execute(
                select(DBNote.id, DBNote.path)
                .where(DBNote.id.not_in(select(note_topics.c.note_id)))
                .order_by(DBNote.path)
            ).all()
        return [(row[0], row[1]) for row in rows]

    @staticmethod
    def delete_unused(session: Session) -> int:
        """Delete topics no note refers to, inside the caller's transaction.

        Returns:
            Number of topics deleted.
        """
        result = session.execute(
            delete(DBTopic).where(DBTopic.id.not_in(select(note_topics.c.topic_id)))
        )
        return result.rowcount or 0
