"""FTS5 full-text search over the notes table.

Encapsulates query preparation, weighted bm25 ranking, integrity checks
and the rebuild-based recovery path.
"""
import logging
import re
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

from sqlalchemy import text
from sqlalchemy.exc import DatabaseError as SQLAlchemyDatabaseError
from sqlalchemy.exc import OperationalError as SQLAlchemyOperationalError
from sqlalchemy.orm import Session

from noteindex.config import DEFAULT_SEARCH_WEIGHTS
from noteindex.exceptions import DatabaseCorruptionError, ErrorCode, QueryError
from noteindex.models.db_models import rebuild_fts_index
from noteindex.storage.base import is_corruption_error, is_lock_error, translate_db_error

logger = logging.getLogger(__name__)

FTS5_KEYWORDS = {"AND", "OR", "NOT", "NEAR"}

# Messages SQLite uses for malformed MATCH expressions
_SYNTAX_MARKERS = ("fts5: syntax error", "syntax error", "no such column", "unterminated string", "unknown special query")


@dataclass
class FtsMatch:
    """A raw FTS hit: note id, positive relevance score, snippet."""
    note_id: str
    score: float
    snippet: str


class FtsIndex:
    """FTS5 index over title, description, aliases and body.

    Args:
        engine: SQLAlchemy engine used for rebuilds.
        session_factory: Callable returning a context-manager session.
        weights: bm25 weights for title, description, aliases, body.
    """

    def __init__(
        self,
        engine,
        session_factory: Callable[[], Session],
        weights: Sequence[float] = DEFAULT_SEARCH_WEIGHTS,
    ) -> None:
        self.engine = engine
        self._session_factory = session_factory
        self.weights = tuple(float(w) for w in weights)

    # ------------------------------------------------------------------
    # Public query API
    # ------------------------------------------------------------------

    def search(self, query: str, limit: Optional[int] = None, _retry: bool = True) -> List[FtsMatch]:
        """Run a ranked MATCH query. ``limit=None`` returns every match.

        Plain queries are tokenised and each term quoted; queries using FTS5
        operators, phrases, prefixes or column filters are passed through.

        Raises:
            QueryError: Empty query or invalid FTS5 syntax.
            DatabaseCorruptionError: The index stayed corrupt after a rebuild.
        """
        match_expr = self.prepare_query(query)

        # Weights are validated floats, safe to inline; bm25 wants literals
        bm25 = "bm25(notes_fts, {:g}, {:g}, {:g}, {:g})".format(*self.weights)
        sql = text(f"""
            SELECT n.id,
                   -{bm25} AS score,
                   snippet(notes_fts, -1, '<b>', '</b>', '...', 16) AS snippet
            FROM notes_fts
            JOIN notes n ON n.rowid = notes_fts.rowid
            WHERE notes_fts MATCH :query
            ORDER BY {bm25}, n.id
            LIMIT :limit
        """)

        with self._session_factory() as session:
            try:
                # SQLite treats a negative LIMIT as no limit
                params = {"query": match_expr, "limit": -1 if limit is None else limit}
                rows = session.execute(sql, params).fetchall()
            except SQLAlchemyDatabaseError as e:
                if is_corruption_error(e):
                    if not _retry:
                        raise DatabaseCorruptionError(
                            f"FTS5 index still corrupted after rebuild: {e}",
                            code=ErrorCode.FTS_CORRUPTED,
                            original_error=e,
                        ) from e
                    logger.error(f"FTS5 corruption detected: {e}. Attempting auto-rebuild...")
                    session.close()
                    self._attempt_recovery()
                    logger.info("FTS5 rebuilt, retrying search")
                    return self.search(query, limit, _retry=False)
                if isinstance(e, SQLAlchemyOperationalError) and self._is_syntax_error(e):
                    raise QueryError(
                        f"Invalid search syntax: {e.orig}",
                        query=query,
                        code=ErrorCode.SEARCH_INVALID_QUERY,
                    ) from e
                raise translate_db_error(e, "search") from e

        return [FtsMatch(note_id=row[0], score=float(row[1]), snippet=row[2] or "") for row in rows]

    def rebuild(self) -> int:
        """Rebuild the FTS5 index from the notes table."""
        return rebuild_fts_index(self.engine)

    def check_integrity(self) -> bool:
        """Whether the FTS index is internally sound and covers every note.

        Runs the FTS5 ``integrity-check`` command and compares the number of
        indexed documents with the number of note rows.
        """
        with self._session_factory() as session:
            try:
                session.execute(
                    text("INSERT INTO notes_fts(notes_fts) VALUES('integrity-check')")
                )
                indexed = session.execute(text("SELECT COUNT(*) FROM notes_fts_docsize")).scalar()
                notes = session.execute(text("SELECT COUNT(*) FROM notes")).scalar()
            except SQLAlchemyDatabaseError as e:
                if is_lock_error(e):
                    raise translate_db_error(e, "fts_integrity_check") from e
                logger.warning(f"FTS5 integrity check failed: {e}")
                return False
            finally:
                session.rollback()

        if indexed != notes:
            logger.warning(f"FTS5 index drift: {indexed} indexed documents vs {notes} notes")
            return False
        return True

    # ------------------------------------------------------------------
    # Query escaping helpers
    # ------------------------------------------------------------------

    @classmethod
    def prepare_query(cls, query: Optional[str]) -> str:
        """Turn user input into an FTS5 MATCH expression.

        Raises:
            QueryError: If the query is empty or has no searchable terms.
        """
        if query is None or not query.strip():
            raise QueryError("Search query cannot be empty", code=ErrorCode.EMPTY_QUERY)

        if not cls._should_escape(query):
            return query.strip()

        terms = [cls._quote_term(t) for t in query.split() if re.search(r"\w", t)]
        if not terms:
            raise QueryError(
                "Search query has no searchable terms",
                query=query,
                code=ErrorCode.EMPTY_QUERY,
            )
        return " ".join(terms)

    @staticmethod
    def _should_escape(query: str) -> bool:
        """Auto-detect whether a query is plain text needing escaping."""
        words = query.split()
        # A keyword only acts as an operator between two operands
        for i in range(1, len(words) - 1):
            if (
                words[i] in FTS5_KEYWORDS
                and words[i - 1] not in FTS5_KEYWORDS
                and words[i + 1] not in FTS5_KEYWORDS
            ):
                return False
        if query.count('"') >= 2:
            return False
        if re.search(r"\b\w+\*", query):
            return False
        if re.search(r"\b\w+:", query):
            return False
        return True

    @staticmethod
    def _quote_term(term: str) -> str:
        return '"' + term.replace('"', '""') + '"'

    @staticmethod
    def _is_syntax_error(error: SQLAlchemyOperationalError) -> bool:
        message = str(error.orig).lower()
        return any(marker in message for marker in _SYNTAX_MARKERS)

    def _attempt_recovery(self) -> None:
        try:
            count = self.rebuild()
        except SQLAlchemyDatabaseError as e:
            raise DatabaseCorruptionError(
                f"FTS5 rebuild failed: {e}",
                code=ErrorCode.DATABASE_RECOVERY_FAILED,
                original_error=e,
            ) from e
        logger.info(f"FTS5 index rebuilt with {count} notes")
