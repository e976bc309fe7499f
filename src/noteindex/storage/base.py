"""Repository interface and shared session handling for the index store."""
import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Callable, Iterable, Iterator, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from noteindex.exceptions import DatabaseCorruptionError, ErrorCode, StorageError
from noteindex.models.schema import (
    IndexedNote,
    IntegrityReport,
    Note,
    SearchResult,
    TagCount,
    TopicCount,
)

logger = logging.getLogger(__name__)

_CORRUPTION_MARKERS = ("malformed", "corrupt", "not a database")
_LOCK_MARKERS = ("database is locked", "database table is locked", "busy")


def is_corruption_error(error: BaseException) -> bool:
    message = str(error).lower()
    return any(marker in message for marker in _CORRUPTION_MARKERS)


def is_lock_error(error: BaseException) -> bool:
    message = str(error).lower()
    return any(marker in message for marker in _LOCK_MARKERS)


def translate_db_error(
    error: SQLAlchemyError, operation: str, write: bool = False
) -> StorageError:
    """Map a SQLAlchemy failure onto the storage error hierarchy."""
    if is_corruption_error(error):
        return DatabaseCorruptionError(
            f"Index database is corrupted during {operation}: {error}",
            original_error=error,
        )
    if is_lock_error(error):
        return StorageError(
            f"Timed out waiting for the index lock during {operation}",
            operation=operation,
            code=ErrorCode.LOCK_TIMEOUT,
            original_error=error,
        )
    return StorageError(
        f"Index {'write' if write else 'read'} failed during {operation}: {error}",
        operation=operation,
        code=ErrorCode.STORAGE_WRITE_FAILED if write else ErrorCode.STORAGE_READ_FAILED,
        original_error=error,
    )


@contextmanager
def read_session(session_factory: Callable[[], Session], operation: str) -> Iterator[Session]:
    """Session for queries; database errors surface as ``StorageError``."""
    with session_factory() as session:
        try:
            yield session
        except SQLAlchemyError as e:
            raise translate_db_error(e, operation) from e


@contextmanager
def write_session(session_factory: Callable[[], Session], operation: str) -> Iterator[Session]:
    """Session wrapping one transaction.

    Commits when the block completes. Any exception rolls the whole
    transaction back before it propagates.
    """
    with session_factory() as session:
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Transaction for {operation} rolled back: {e}")
            raise translate_db_error(e, operation, write=True) from e
        except Exception:
            session.rollback()
            raise


def executemany(session: Session, statement: Any, rows: List[dict]) -> None:
    """Run ``statement`` once per parameter set, skipping empty batches."""
    if rows:
        session.execute(statement, rows)


class IndexRepository(ABC):
    """Operations every note index store provides."""

    @abstractmethod
    def upsert(self, note: Note, content_hash: str, path: str, body: str = "") -> None:
        """Insert or replace one note and all of its associations."""
        pass

    @abstractmethod
    def upsert_batch(self, items: Iterable[Any]) -> int:
        """Insert or replace many notes in one transaction."""
        pass

    @abstractmethod
    def remove(self, note_id: str) -> bool:
        """Remove a note; returns whether it existed."""
        pass

    @abstractmethod
    def get(self, note_id: str) -> Optional[IndexedNote]:
        """Fetch one note with its association sets."""
        pass

    @abstractmethod
    def list_by_topic(
        self, topic: str, include_descendants: Optional[bool] = None
    ) -> List[IndexedNote]:
        """Notes filed under a topic."""
        pass

    @abstractmethod
    def list_by_tags(self, tags: List[str]) -> List[IndexedNote]:
        """Notes carrying every one of ``tags``."""
        pass

    @abstractmethod
    def search(self, query: str, limit: Optional[int] = None) -> List[SearchResult]:
        """Ranked full-text search."""
        pass

    @abstractmethod
    def backlinks(self, note_id: str, rel: Optional[str] = None) -> List[IndexedNote]:
        """Notes linking to ``note_id``."""
        pass

    @abstractmethod
    def topic_counts(self) -> List[TopicCount]:
        pass

    @abstractmethod
    def tag_counts(self) -> List[TagCount]:
        pass

    @abstractmethod
    def integrity_check(self, repair: bool = False) -> IntegrityReport:
        """Advisory consistency report."""
        pass
