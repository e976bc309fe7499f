"""SQLAlchemy database models for the note index."""
import logging
from pathlib import Path
from typing import Optional

from sqlalchemy import (Column, ForeignKey, Index, Integer, String, Table, Text,
                        UniqueConstraint, create_engine, event, inspect, text)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from noteindex.config import config
from noteindex.models.schema import utc_now

logger = logging.getLogger(__name__)

# Bump when the table layout changes; stored in schema_version
SCHEMA_VERSION = 1

# Create base class for SQLAlchemy models
Base = declarative_base()

# Association table for topics and notes
note_topics = Table(
    "note_topics",
    Base.metadata,
    Column("note_id", String(26), ForeignKey("notes.id", ondelete="CASCADE"), primary_key=True),
    Column("topic_id", Integer, ForeignKey("topics.id", ondelete="CASCADE"), primary_key=True),
    Index("idx_note_topics_topic", "topic_id"),
)

# Association table for tags and notes
note_tags = Table(
    "note_tags",
    Base.metadata,
    Column("note_id", String(26), ForeignKey("notes.id", ondelete="CASCADE"), primary_key=True),
    Column("tag_id", Integer, ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True),
    Index("idx_note_tags_tag", "tag_id"),
)


class DBNote(Base):
    """One indexed note file.

    The implicit SQLite rowid of this table is what ``notes_fts`` points at.
    """
    __tablename__ = "notes"
    id = Column(String(26), primary_key=True)
    path = Column(Text, nullable=False, unique=True)
    title = Column(Text, nullable=False)
    description = Column(Text, nullable=True)
    # ISO 8601 UTC strings; sort order matches chronological order
    created = Column(Text, nullable=False)
    modified = Column(Text, nullable=False)
    content_hash = Column(String(64), nullable=False)
    body = Column(Text, nullable=False, default="")
    aliases_text = Column(Text, nullable=False, default="")

    __table_args__ = (
        Index("idx_notes_title", "title"),
        Index("idx_notes_modified", "modified"),
    )

    def __repr__(self) -> str:
        return f"<Note(id='{self.id}', path='{self.path}')>"


class DBTopic(Base):
    """A topic path. The unique index on ``path`` serves descendant range scans."""
    __tablename__ = "topics"
    id = Column(Integer, primary_key=True, autoincrement=True)
    path = Column(Text, unique=True, nullable=False)

    def __repr__(self) -> str:
        return f"<Topic(id={self.id}, path='{self.path}')>"


class DBTag(Base):
    """Database model for a tag."""
    __tablename__ = "tags"
    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), unique=True, nullable=False)

    def __repr__(self) -> str:
        """Return string representation of tag."""
        return f"<Tag(id={self.id}, name='{self.name}')>"


class DBAlias(Base):
    __tablename__ = "aliases"
    note_id = Column(String(26), ForeignKey("notes.id", ondelete="CASCADE"), primary_key=True)
    alias = Column(Text, primary_key=True)

    __table_args__ = (Index("idx_aliases_alias", "alias"),)


class DBLink(Base):
    """A link from a note to a target id.

    ``target_id`` has no foreign key: links to notes that do not exist are
    kept and reported by the integrity check.
    """
    __tablename__ = "links"
    id = Column(Integer, primary_key=True, autoincrement=True)
    source_id = Column(String(26), ForeignKey("notes.id", ondelete="CASCADE"), nullable=False)
    target_id = Column(String(26), nullable=False)
    context = Column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint("source_id", "target_id", name="unique_link_target"),
        Index("idx_links_target", "target_id"),
    )

    def __repr__(self) -> str:
        return f"<Link(id={self.id}, source='{self.source_id}', target='{self.target_id}')>"


class DBLinkRel(Base):
    __tablename__ = "link_rels"
    link_id = Column(Integer, ForeignKey("links.id", ondelete="CASCADE"), primary_key=True)
    rel = Column(String(64), primary_key=True)

    __table_args__ = (Index("idx_link_rels_rel", "rel"),)


class DBSchemaVersion(Base):
    __tablename__ = "schema_version"
    version = Column(Integer, primary_key=True)
    applied_at = Column(Text, nullable=False)


class DBIndexMeta(Base):
    """Key/value facts about the store, such as the last full rebuild time."""
    __tablename__ = "index_meta"
    key = Column(String(64), primary_key=True)
    value = Column(Text, nullable=False)


class DBDuplicateId(Base):
    """A file skipped by the last build because its id was already taken."""
    __tablename__ = "duplicate_ids"
    path = Column(Text, primary_key=True)
    note_id = Column(String(26), nullable=False)
    first_path = Column(Text, nullable=False)


def init_db(
    database_path: Optional[Path] = None,
    in_memory: bool = False,
    busy_timeout: Optional[float] = None,
) -> Engine:
    """Create an engine for the index store and make sure the schema exists.

    File databases get WAL journaling with ``synchronous=NORMAL`` and a
    small QueuePool. In-memory databases share one connection through a
    StaticPool so every session sees the same data. Foreign keys are
    enabled on every connection; association rows rely on cascades.

    Args:
        database_path: SQLite file; defaults to ``config.database_path``.
        in_memory: Use a private in-memory database instead of a file.
        busy_timeout: Seconds a writer waits on the file lock.
    """
    timeout = busy_timeout if busy_timeout is not None else config.busy_timeout_seconds

    if in_memory:
        engine = create_engine(
            "sqlite://",
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
    else:
        engine = create_engine(
            config.get_db_url(database_path or config.database_path),
            poolclass=QueuePool,
            pool_size=5,
            max_overflow=10,
            pool_timeout=30,
            pool_pre_ping=True,
            connect_args={"timeout": timeout},
        )

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        if not in_memory:
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute(f"PRAGMA busy_timeout={int(timeout * 1000)}")
        cursor.close()

    create_schema(engine)
    return engine


def create_schema(engine: Engine) -> None:
    """Create all tables, the FTS5 table and its triggers.

    Idempotent: every statement is guarded, so running it against an
    existing store changes nothing.
    """
    Base.metadata.create_all(engine)
    init_fts5(engine)
    with engine.begin() as conn:
        conn.execute(
            text(
                "INSERT OR IGNORE INTO schema_version (version, applied_at) "
                "VALUES (:version, :applied_at)"
            ),
            {"version": SCHEMA_VERSION, "applied_at": utc_now().isoformat()},
        )


def init_fts5(engine: Engine) -> None:
    """Initialize the external-content FTS5 table over ``notes``.

    The FTS table stores only the inverted index; text is read back from
    ``notes`` by rowid. Triggers keep both in the same transaction.
    """
    with engine.begin() as conn:
        conn.execute(text("""
            CREATE VIRTUAL TABLE IF NOT EXISTS notes_fts USING fts5(
                title,
                description,
                aliases_text,
                body,
                content='notes',
                content_rowid='rowid',
                tokenize='unicode61 remove_diacritics 2'
            )
        """))

        conn.execute(text("""
            CREATE TRIGGER IF NOT EXISTS notes_ai AFTER INSERT ON notes BEGIN
                INSERT INTO notes_fts(rowid, title, description, aliases_text, body)
                VALUES (NEW.rowid, NEW.title, NEW.description, NEW.aliases_text, NEW.body);
            END
        """))

        conn.execute(text("""
            CREATE TRIGGER IF NOT EXISTS notes_ad AFTER DELETE ON notes BEGIN
                INSERT INTO notes_fts(notes_fts, rowid, title, description, aliases_text, body)
                VALUES ('delete', OLD.rowid, OLD.title, OLD.description, OLD.aliases_text, OLD.body);
            END
        """))

        conn.execute(text("""
            CREATE TRIGGER IF NOT EXISTS notes_au AFTER UPDATE ON notes BEGIN
                INSERT INTO notes_fts(notes_fts, rowid, title, description, aliases_text, body)
                VALUES ('delete', OLD.rowid, OLD.title, OLD.description, OLD.aliases_text, OLD.body);
                INSERT INTO notes_fts(rowid, title, description, aliases_text, body)
                VALUES (NEW.rowid, NEW.title, NEW.description, NEW.aliases_text, NEW.body);
            END
        """))


def rebuild_fts_index(engine: Engine) -> int:
    """Re-derive the FTS5 index from the notes table.

    Returns:
        Number of notes indexed.
    """
    with engine.begin() as conn:
        conn.execute(text("INSERT INTO notes_fts(notes_fts) VALUES('rebuild')"))
        count = conn.execute(text("SELECT COUNT(*) FROM notes")).scalar()

    logger.info(f"Rebuilt FTS5 index with {count} notes")
    return count


def get_schema_version(engine: Engine) -> int:
    """Highest applied schema version, or 0 for an empty database."""
    if not inspect(engine).has_table("schema_version"):
        return 0
    with engine.connect() as conn:
        version = conn.execute(text("SELECT MAX(version) FROM schema_version")).scalar()
    return version or 0


def get_session_factory(engine: Engine):
    """Get a session factory for the database."""
    return sessionmaker(bind=engine, expire_on_commit=False)
