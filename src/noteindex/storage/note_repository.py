"""Repository for the note index: writes, aggregated reads and recovery."""

import json
import logging
import shutil
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import bindparam, delete, func, select, text
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DatabaseError as SQLAlchemyDatabaseError
from sqlalchemy.orm import Session

from noteindex.config import IndexConfig
from noteindex.config import config as default_config
from noteindex.exceptions import (
    DatabaseCorruptionError,
    DuplicateIdError,
    ErrorCode,
    QueryError,
)
from noteindex.models.db_models import (
    DBDuplicateId,
    DBIndexMeta,
    DBNote,
    create_schema,
    get_schema_version,
    get_session_factory,
    init_db,
)
from noteindex.models.schema import (
    BuildError,
    BuildErrorKind,
    IndexedNote,
    IndexState,
    IntegrityIssue,
    IntegrityIssueKind,
    IntegrityReport,
    Note,
    ParsedNote,
    RelCount,
    SearchResult,
    TagCount,
    TopicCount,
    TOPIC_SEPARATOR,
    normalize_note_id,
    normalize_rel,
    normalize_tag,
    normalize_topic,
    utc_now,
)
from noteindex.observability import traced
from noteindex.storage.base import (
    IndexRepository,
    executemany,
    is_corruption_error,
    is_lock_error,
    read_session,
    translate_db_error,
    write_session,
)
from noteindex.storage.fts_index import FtsIndex
from noteindex.storage.link_repository import LinkRepository
from noteindex.storage.tag_repository import TagRepository
from noteindex.storage.topic_repository import TopicRepository
from noteindex.utils import escape_like_pattern

logger = logging.getLogger(__name__)

# index_meta keys
META_BUILT_AT = "built_at"
META_LAST_FULL_REBUILD = "last_full_rebuild"
META_LAST_INCREMENTAL = "last_incremental_update"

# One statement fetches a note with every association set as JSON arrays.
# json() keeps the nested rel array typed as JSON across the subquery.
_NOTE_SELECT = """
    SELECT n.id, n.path, n.title, n.description, n.created, n.modified,
           n.content_hash, n.body,
           (SELECT json_group_array(t.path)
              FROM note_topics nt JOIN topics t ON t.id = nt.topic_id
             WHERE nt.note_id = n.id) AS topics,
           (SELECT json_group_array(a.alias)
              FROM aliases a
             WHERE a.note_id = n.id) AS aliases,
           (SELECT json_group_array(g.name)
              FROM note_tags ng JOIN tags g ON g.id = ng.tag_id
             WHERE ng.note_id = n.id) AS tags,
           (SELECT json_group_array(json_object(
                       'id', l.target_id,
                       'rel', json((SELECT json_group_array(r.rel)
                                      FROM link_rels r
                                     WHERE r.link_id = l.id)),
                       'note', l.context))
              FROM links l
             WHERE l.source_id = n.id) AS links
      FROM notes n
"""

# Columns replaced by an upsert
_UPSERT_COLUMNS = (
    "created",
    "path",
    "title",
    "description",
    "modified",
    "content_hash",
    "body",
    "aliases_text",
)

# (note, content_hash, path, body)
WriteItem = Tuple[Note, str, str, str]


class NoteIndexRepository(IndexRepository):
    """SQLite-backed note index.

    The repository owns its engine. Use it as a context manager, or call
    ``close()``, to release connections when a command finishes::

        with NoteIndexRepository.open(Path("index.db")) as repo:
            repo.list_by_topic("software/")

    Opening a database file that SQLite cannot read moves it aside as a
    timestamped backup and starts from an empty schema; the index is then
    uninitialized and needs a full rebuild.
    """

    def __init__(
        self,
        engine: Optional[Engine] = None,
        config: Optional[IndexConfig] = None,
        database_path: Optional[Path] = None,
        in_memory: Optional[bool] = None,
    ):
        """Initialize the repository.

        Args:
            engine: Pre-configured SQLAlchemy engine. The schema is created on
                    it if missing.
            config: Index configuration; defaults to the global config.
            database_path: SQLite file. Ignored when ``in_memory`` or
                           ``engine`` is given.
            in_memory: Use a private in-memory database. Defaults to
                       ``config.in_memory_db``.
        """
        self.config = config or default_config
        self.backup_path: Optional[str] = None

        if engine is not None:
            db_name = engine.url.database
            self.in_memory = not db_name or db_name == ":memory:"
            self.database_path = None if self.in_memory else Path(db_name)
            create_schema(engine)
            self.engine = engine
        else:
            self.in_memory = self.config.in_memory_db if in_memory is None else in_memory
            self.database_path = (
                None
                if self.in_memory
                else self.config.get_absolute_path(database_path or self.config.database_path)
            )
            self.engine = self._open_engine()

        self._bind(self.engine)
        logger.info(
            f"NoteIndexRepository initialized: "
            f"db={':memory:' if self.in_memory else self.database_path}, "
            f"state={self.state.value}"
        )

    @classmethod
    def open(
        cls,
        database_path: Optional[Path] = None,
        in_memory: bool = False,
        config: Optional[IndexConfig] = None,
    ) -> "NoteIndexRepository":
        """Open (creating if needed) an index store."""
        return cls(config=config, database_path=database_path, in_memory=in_memory)

    def __enter__(self) -> "NoteIndexRepository":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        """Dispose the engine and its pooled connections."""
        self.engine.dispose()

    def _bind(self, engine: Engine) -> None:
        self.session_factory = get_session_factory(engine)
        self._fts = FtsIndex(engine, self.session_factory, self.config.search_weights)
        self._topics = TopicRepository(self.session_factory)
        self._tags = TagRepository(self.session_factory)
        self._links = LinkRepository(self.session_factory)

    def _open_engine(self) -> Engine:
        try:
            return init_db(
                self.database_path,
                in_memory=self.in_memory,
                busy_timeout=self.config.busy_timeout_seconds,
            )
        except SQLAlchemyDatabaseError as e:
            if self.in_memory or not is_corruption_error(e):
                raise translate_db_error(e, "open", write=True) from e
            logger.error(
                f"Index database {self.database_path} is unreadable: {e}. "
                "Moving it aside and starting from an empty index."
            )
            self.backup_path = self._move_database_aside()
            return init_db(
                self.database_path,
                in_memory=False,
                busy_timeout=self.config.busy_timeout_seconds,
            )

    # ------------------------------------------------------------------
    # Lifecycle and health
    # ------------------------------------------------------------------

    @property
    def state(self) -> IndexState:
        """BUILT once a build pass has committed, UNINITIALIZED otherwise."""
        with read_session(self.session_factory, "state") as session:
            built = session.scalar(
                select(DBIndexMeta.value).where(DBIndexMeta.key == META_BUILT_AT)
            )
        return IndexState.BUILT if built else IndexState.UNINITIALIZED

    def get_meta(self, key: str) -> Optional[str]:
        with read_session(self.session_factory, "get_meta") as session:
            return session.scalar(select(DBIndexMeta.value).where(DBIndexMeta.key == key))

    def schema_version(self) -> int:
        return get_schema_version(self.engine)

    def check_database_health(self) -> Dict[str, Any]:
        """Check SQLite and FTS5 integrity.

        Returns:
            Dict with keys:
                - healthy: no critical issues (SQLite itself is sound)
                - sqlite_ok: result of ``PRAGMA quick_check``
                - fts_ok: FTS5 integrity and coverage of every note
                - note_count: rows in ``notes``
                - issues: non-critical problems (FTS drift)
                - critical_issues: problems that need the store reset
        """
        issues: List[str] = []
        critical_issues: List[str] = []
        sqlite_ok = False
        fts_ok = False
        note_count = 0

        try:
            with self.session_factory() as session:
                result = session.execute(text("PRAGMA quick_check")).fetchone()
                sqlite_ok = result[0] == "ok"
                if not sqlite_ok:
                    critical_issues.append(f"SQLite integrity check failed: {result[0]}")
                note_count = session.scalar(select(func.count(DBNote.id)))
        except SQLAlchemyDatabaseError as e:
            if is_lock_error(e):
                raise translate_db_error(e, "health_check") from e
            sqlite_ok = False
            critical_issues.append(f"Database access error: {e}")

        if sqlite_ok:
            fts_ok = self._fts.check_integrity()
            if not fts_ok:
                issues.append("FTS5 index is damaged or out of sync with notes")

        return {
            "healthy": sqlite_ok and not critical_issues,
            "sqlite_ok": sqlite_ok,
            "fts_ok": fts_ok,
            "note_count": note_count,
            "issues": issues,
            "critical_issues": critical_issues,
        }

    def reset_store(self) -> str:
        """Discard the store and start again from an empty schema.

        A file database (with its ``-wal``/``-shm`` companions) is moved
        aside as a timestamped backup first.

        Returns:
            Path of the backup, or an empty string for in-memory stores.

        Raises:
            DatabaseCorruptionError: If the files cannot be moved or the new
                schema cannot be created.
        """
        self.engine.dispose()
        backup = "" if self.in_memory else self._move_database_aside()
        try:
            self.engine = init_db(
                self.database_path,
                in_memory=self.in_memory,
                busy_timeout=self.config.busy_timeout_seconds,
            )
        except SQLAlchemyDatabaseError as e:
            raise DatabaseCorruptionError(
                f"Failed to re-create index database: {e}",
                recovered=False,
                backup_path=backup or None,
                code=ErrorCode.DATABASE_RECOVERY_FAILED,
                original_error=e,
            ) from e
        self._bind(self.engine)
        self.backup_path = backup or None
        logger.warning(f"Index store reset (backup: {backup or 'none'})")
        return backup

    def _move_database_aside(self) -> str:
        db_path = self.database_path
        if db_path is None or not db_path.exists():
            return ""

        timestamp = utc_now().strftime("%Y%m%d_%H%M%S")
        backup_path = db_path.with_name(f"{db_path.stem}.backup.{timestamp}.bak")
        try:
            shutil.move(str(db_path), str(backup_path))
            for suffix in ("-wal", "-shm"):
                companion = db_path.with_name(db_path.name + suffix)
                if companion.exists():
                    companion.unlink()
        except OSError as e:
            raise DatabaseCorruptionError(
                f"Failed to move corrupted database aside: {e}",
                recovered=False,
                backup_path=str(backup_path),
                code=ErrorCode.DATABASE_RECOVERY_FAILED,
                original_error=e,
            ) from e

        logger.info(f"Moved database {db_path} to {backup_path}")
        return str(backup_path)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    @traced("upsert")
    def upsert(self, note: Note, content_hash: str, path: str, body: str = "") -> None:
        """Insert or replace one note.

        Every column and association set is replaced from ``note``. A
        different note previously stored at ``path`` is removed.
        """
        with write_session(self.session_factory, "upsert") as session:
            self._write_notes(session, [(note, content_hash, path, body)])

    @traced("upsert_batch")
    def upsert_batch(self, items: Iterable[Any]) -> int:
        """Insert or replace many notes in one transaction.

        Items may be ``IndexedNote`` instances, ``(ParsedNote, path)`` pairs,
        or ``(note, content_hash, path[, body])`` tuples.

        Returns:
            Number of notes written.
        """
        prepared = [self._coerce_item(item) for item in items]
        with write_session(self.session_factory, "upsert_batch") as session:
            return self._write_notes(session, prepared)

    @traced("remove")
    def remove(self, note_id: str) -> bool:
        """Remove a note with its associations and search entry."""
        canonical = self._lookup_id(note_id)
        if canonical is None:
            return False
        with write_session(self.session_factory, "remove") as session:
            return self._delete_notes(session, [canonical]) > 0

    def remove_by_path(self, path: str) -> bool:
        with write_session(self.session_factory, "remove_by_path") as session:
            return self._delete_paths(session, [path]) > 0

    def clear(self) -> None:
        """Remove every note, topic, tag and diagnostic; the index becomes uninitialized."""
        with write_session(self.session_factory, "clear") as session:
            self._clear(session)
            session.execute(delete(DBIndexMeta))

    def prune_unused(self) -> int:
        """Delete topic and tag rows no note refers to.

        Returns:
            Number of rows deleted.
        """
        with write_session(self.session_factory, "prune_unused") as session:
            return self._prune(session)

    def replace_all(
        self,
        items: Sequence[Any],
        duplicates: Sequence[BuildError] = (),
        prune_unused: Optional[bool] = None,
    ) -> int:
        """Swap the whole index contents in one transaction.

        Used by full rebuilds: clears every derived table, writes ``items``,
        records ``duplicates`` and stamps the build marker.
        """
        prepared = [self._coerce_item(item) for item in items]
        prune = self.config.prune_unused_on_rebuild if prune_unused is None else prune_unused
        with write_session(self.session_factory, "full_rebuild") as session:
            self._clear(session)
            written = self._write_notes(session, prepared)
            self._store_duplicates(session, duplicates)
            if prune:
                self._prune(session)
            self._stamp(session, META_LAST_FULL_REBUILD)
        return written

    def apply_changes(
        self,
        remove_paths: Sequence[str],
        items: Sequence[Any],
        duplicates: Sequence[BuildError] = (),
    ) -> int:
        """Apply an incremental pass in one transaction.

        Deletes the notes stored at ``remove_paths``, upserts ``items`` and
        replaces the recorded duplicate-id diagnostics.

        Returns:
            Number of notes removed.
        """
        prepared = [self._coerce_item(item) for item in items]
        with write_session(self.session_factory, "incremental_update") as session:
            removed = self._delete_paths(session, remove_paths)
            self._write_notes(session, prepared)
            self._store_duplicates(session, duplicates)
            self._stamp(session, META_LAST_INCREMENTAL)
        return removed

    @staticmethod
    def _coerce_item(item: Any) -> WriteItem:
        if isinstance(item, IndexedNote):
            return (item, item.content_hash, item.path, item.body)
        if isinstance(item, tuple):
            if len(item) == 2 and isinstance(item[0], ParsedNote):
                parsed, path = item
                return (parsed.note, parsed.content_hash, path, parsed.body)
            if len(item) == 3:
                note, digest, path = item
                return (note, digest, path, "")
            if len(item) == 4:
                return item
        raise TypeError(f"Cannot index item of type {type(item).__name__}")

    def _write_notes(self, session: Session, items: Sequence[WriteItem]) -> int:
        """Upsert notes and replace their associations inside ``session``."""
        # Last write wins for an id repeated within one batch
        by_id: Dict[str, WriteItem] = {}
        for item in items:
            by_id[item[0].id] = item
        if len(by_id) != len(items):
            logger.warning(f"Batch repeated {len(items) - len(by_id)} note id(s); kept the last")
        if not by_id:
            return 0

        note_rows = []
        for note, digest, path, body in by_id.values():
            note_rows.append({
                "id": note.id,
                "path": path,
                "title": note.title,
                "description": note.description,
                "created": note.created.isoformat(),
                "modified": note.modified.isoformat(),
                "content_hash": digest,
                "body": body or "",
                "aliases_text": note.aliases_text,
            })

        # A different note previously stored at the same path gives way
        executemany(
            session,
            text("DELETE FROM notes WHERE path = :path AND id != :id"),
            [{"path": r["path"], "id": r["id"]} for r in note_rows],
        )

        stmt = sqlite_insert(DBNote.__table__)
        stmt = stmt.on_conflict_do_update(
            index_elements=[DBNote.__table__.c.id],
            set_={name: stmt.excluded[name] for name in _UPSERT_COLUMNS},
        )
        session.execute(stmt, note_rows)

        ids = list(by_id.keys())
        self._delete_associations(session, ids)

        topic_rows, tag_rows, alias_rows, link_rows, rel_rows = [], [], [], [], []
        for note, _digest, _path, _body in by_id.values():
            topic_rows.extend({"note_id": note.id, "path": p} for p in note.topic_paths)
            tag_rows.extend({"note_id": note.id, "name": t} for t in note.tag_names)
            alias_rows.extend({"note_id": note.id, "alias": a} for a in note.aliases)
            for link in note.links:
                link_rows.append({
                    "source_id": note.id,
                    "target_id": link.target_id,
                    "context": link.context,
                })
                rel_rows.extend(
                    {"source_id": note.id, "target_id": link.target_id, "rel": rel}
                    for rel in link.rels
                )

        executemany(
            session,
            text("INSERT OR IGNORE INTO topics (path) VALUES (:path)"),
            [{"path": p} for p in sorted({r["path"] for r in topic_rows})],
        )
        executemany(
            session,
            text(
                "INSERT OR IGNORE INTO note_topics (note_id, topic_id) "
                "SELECT :note_id, id FROM topics WHERE path = :path"
            ),
            topic_rows,
        )
        executemany(
            session,
            text("INSERT OR IGNORE INTO tags (name) VALUES (:name)"),
            [{"name": n} for n in sorted({r["name"] for r in tag_rows})],
        )
        executemany(
            session,
            text(
                "INSERT OR IGNORE INTO note_tags (note_id, tag_id) "
                "SELECT :note_id, id FROM tags WHERE name = :name"
            ),
            tag_rows,
        )
        executemany(
            session,
            text("INSERT OR IGNORE INTO aliases (note_id, alias) VALUES (:note_id, :alias)"),
            alias_rows,
        )
        executemany(
            session,
            text(
                "INSERT INTO links (source_id, target_id, context) "
                "VALUES (:source_id, :target_id, :context)"
            ),
            link_rows,
        )
        executemany(
            session,
            text(
                "INSERT OR IGNORE INTO link_rels (link_id, rel) "
                "SELECT id, :rel FROM links "
                "WHERE source_id = :source_id AND target_id = :target_id"
            ),
            rel_rows,
        )

        logger.debug(
            f"Wrote {len(note_rows)} notes ({len(topic_rows)} topic refs, "
            f"{len(tag_rows)} tag refs, {len(link_rows)} links)"
        )
        return len(note_rows)

    @staticmethod
    def _delete_associations(session: Session, note_ids: List[str]) -> None:
        params = [{"id": note_id} for note_id in note_ids]
        executemany(session, text("DELETE FROM note_topics WHERE note_id = :id"), params)
        executemany(session, text("DELETE FROM note_tags WHERE note_id = :id"), params)
        executemany(session, text("DELETE FROM aliases WHERE note_id = :id"), params)
        executemany(
            session,
            text("DELETE FROM link_rels WHERE link_id IN (SELECT id FROM links WHERE source_id = :id)"),
            params,
        )
        executemany(session, text("DELETE FROM links WHERE source_id = :id"), params)

    def _delete_notes(self, session: Session, note_ids: List[str]) -> int:
        if not note_ids:
            return 0
        self._delete_associations(session, note_ids)
        result = session.execute(delete(DBNote).where(DBNote.id.in_(note_ids)))
        return result.rowcount or 0

    def _delete_paths(self, session: Session, paths: Sequence[str]) -> int:
        if not paths:
            return 0
        ids = session.scalars(select(DBNote.id).where(DBNote.path.in_(list(paths)))).all()
        return self._delete_notes(session, list(ids))

    @staticmethod
    def _clear(session: Session) -> None:
        for table in ("link_rels", "links", "aliases", "note_tags", "note_topics", "notes", "topics", "tags"):
            session.execute(text(f"DELETE FROM {table}"))
        session.execute(delete(DBDuplicateId))

    @staticmethod
    def _prune(session: Session) -> int:
        topics = TopicRepository.delete_unused(session)
        tags = TagRepository.delete_unused(session)
        if topics or tags:
            logger.info(f"Pruned {topics} unused topics and {tags} unused tags")
        return topics + tags

    @staticmethod
    def _store_duplicates(session: Session, duplicates: Sequence[BuildError]) -> None:
        session.execute(delete(DBDuplicateId))
        executemany(
            session,
            text(
                "INSERT OR REPLACE INTO duplicate_ids (path, note_id, first_path) "
                "VALUES (:path, :note_id, :first_path)"
            ),
            [
                {"path": d.path, "note_id": d.note_id, "first_path": d.first_path}
                for d in duplicates
            ],
        )

    @staticmethod
    def _stamp(session: Session, key: str) -> None:
        now = utc_now().isoformat()
        executemany(
            session,
            text("INSERT OR REPLACE INTO index_meta (key, value) VALUES (:key, :value)"),
            [{"key": key, "value": now}, {"key": META_BUILT_AT, "value": now}],
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @staticmethod
    def _lookup_id(note_id: str) -> Optional[str]:
        # A malformed id cannot be stored, so lookups simply miss
        try:
            return normalize_note_id(note_id)
        except ValueError:
            return None

    @staticmethod
    def _row_to_note(row) -> IndexedNote:
        links = sorted(json.loads(row.links), key=lambda link: link["id"])
        for link in links:
            link["rel"] = sorted(link["rel"])
        return IndexedNote(
            id=row.id,
            path=row.path,
            title=row.title,
            description=row.description,
            created=row.created,
            modified=row.modified,
            content_hash=row.content_hash,
            body=row.body,
            topics=sorted(json.loads(row.topics)),
            aliases=sorted(json.loads(row.aliases)),
            tags=sorted(json.loads(row.tags)),
            links=links,
        )

    @traced("get")
    def get(self, note_id: str) -> Optional[IndexedNote]:
        """Fetch a note and all association sets in one statement."""
        canonical = self._lookup_id(note_id)
        if canonical is None:
            return None
        with read_session(self.session_factory, "get") as session:
            row = session.execute(
                text(_NOTE_SELECT + " WHERE n.id = :id"), {"id": canonical}
            ).fetchone()
        return self._row_to_note(row) if row else None

    def get_many(self, note_ids: Sequence[str]) -> List[IndexedNote]:
        """Fetch several notes, preserving the order of ``note_ids``."""
        if not note_ids:
            return []
        stmt = text(_NOTE_SELECT + " WHERE n.id IN :ids").bindparams(
            bindparam("ids", expanding=True)
        )
        with read_session(self.session_factory, "get_many") as session:
            rows = session.execute(stmt, {"ids": list(note_ids)}).fetchall()
        notes = {row.id: self._row_to_note(row) for row in rows}
        return [notes[i] for i in note_ids if i in notes]

    @traced("list_all")
    def list_all(self) -> List[IndexedNote]:
        """Every indexed note, ordered by path."""
        with read_session(self.session_factory, "list_all") as session:
            rows = session.execute(text(_NOTE_SELECT + " ORDER BY n.path")).fetchall()
        return [self._row_to_note(row) for row in rows]

    def count(self) -> int:
        with read_session(self.session_factory, "count") as session:
            return session.scalar(select(func.count(DBNote.id)))

    @traced("list_by_topic")
    def list_by_topic(
        self, topic: str, include_descendants: Optional[bool] = None
    ) -> List[IndexedNote]:
        """Notes filed under ``topic``.

        Only the exact topic matches unless descendants are requested,
        either with ``include_descendants=True`` or by ending ``topic`` with
        the separator (``"software/"``).

        Raises:
            QueryError: If ``topic`` is empty or malformed.
        """
        if not isinstance(topic, str) or not topic.strip():
            raise QueryError("Topic cannot be empty", code=ErrorCode.INVALID_TOPIC)
        trailing = topic.strip().endswith(TOPIC_SEPARATOR)
        descend = bool(include_descendants) or trailing
        try:
            path = normalize_topic(topic)
        except ValueError as e:
            raise QueryError(str(e), query=topic, code=ErrorCode.INVALID_TOPIC) from e
        return self.get_many(self._topics.find_note_ids(path, descend))

    @traced("list_by_tags")
    def list_by_tags(self, tags: List[str]) -> List[IndexedNote]:
        """Notes carrying every one of ``tags``.

        Raises:
            QueryError: If ``tags`` is empty or a tag is invalid.
        """
        if isinstance(tags, str):
            tags = [tags]
        if not tags:
            raise QueryError("At least one tag is required", code=ErrorCode.INVALID_TAG)
        try:
            names = [normalize_tag(t) for t in tags]
        except ValueError as e:
            raise QueryError(str(e), query=", ".join(map(str, tags)), code=ErrorCode.INVALID_TAG) from e
        return self.get_many(self._tags.find_note_ids_by_tags(names))

    @traced("search")
    def search(self, query: str, limit: Optional[int] = None) -> List[SearchResult]:
        """Ranked full-text search over title, description, aliases and body.

        Raises:
            QueryError: For an empty query or invalid FTS5 syntax.
        """
        if limit is None:
            limit = self.config.search_limit
        matches = self._fts.search(query, limit)
        notes = {n.id: n for n in self.get_many([m.note_id for m in matches])}
        return [
            SearchResult(note=notes[m.note_id], score=m.score, snippet=m.snippet)
            for m in matches
            if m.note_id in notes
        ]

    @traced("backlinks")
    def backlinks(self, note_id: str, rel: Optional[str] = None) -> List[IndexedNote]:
        """Notes whose links point at ``note_id``, optionally only via ``rel``.

        Raises:
            QueryError: If ``rel`` is not a valid relationship label.
        """
        canonical = self._lookup_id(note_id)
        if canonical is None:
            return []
        rel_name = None
        if rel is not None:
            try:
                rel_name = normalize_rel(rel)
            except ValueError as e:
                raise QueryError(str(e), query=rel, code=ErrorCode.INVALID_REL) from e
        return self.get_many(self._links.find_source_ids(canonical, rel_name))

    @traced("topic_counts")
    def topic_counts(self) -> List[TopicCount]:
        return self._topics.get_counts()

    @traced("tag_counts")
    def tag_counts(self) -> List[TagCount]:
        return self._tags.get_counts()

    @traced("rel_counts")
    def rel_counts(self) -> List[RelCount]:
        return self._links.get_rel_counts()

    def all_topics(self) -> List[str]:
        return self._topics.get_all()

    def all_tags(self) -> List[str]:
        return self._tags.get_all()

    def find_by_id_prefix(self, prefix: str) -> List[IndexedNote]:
        """Notes whose id starts with ``prefix`` (case-insensitive)."""
        if not prefix or not prefix.strip():
            raise QueryError("ID prefix cannot be empty", code=ErrorCode.SEARCH_INVALID_QUERY)
        pattern = escape_like_pattern(prefix.strip().upper()) + "%"
        with read_session(self.session_factory, "find_by_id_prefix") as session:
            ids = session.scalars(
                select(DBNote.id)
                .where(DBNote.id.like(pattern, escape="\\"))
                .order_by(DBNote.id)
            ).all()
        return self.get_many(list(ids))

    def find_by_title(self, title: str) -> List[IndexedNote]:
        """Notes whose title equals ``title``, ignoring case."""
        with read_session(self.session_factory, "find_by_title") as session:
            ids = session.scalars(
                select(DBNote.id)
                .where(func.lower(DBNote.title) == title.strip().lower())
                .order_by(DBNote.path)
            ).all()
        return self.get_many(list(ids))

    def find_by_alias(self, alias: str) -> List[IndexedNote]:
        """Notes carrying ``alias`` (exact match, ASCII case-insensitive)."""
        with read_session(self.session_factory, "find_by_alias") as session:
            ids = session.scalars(
                text(
                    "SELECT DISTINCT a.note_id FROM aliases a "
                    "JOIN notes n ON n.id = a.note_id "
                    "WHERE a.alias LIKE :alias ESCAPE '\\' ORDER BY n.path"
                ),
                {"alias": escape_like_pattern(alias.strip())},
            ).all()
        return self.get_many(list(ids))

    def get_content_hash(self, path: str) -> Optional[str]:
        with read_session(self.session_factory, "get_content_hash") as session:
            return session.scalar(select(DBNote.content_hash).where(DBNote.path == path))

    def all_indexed_paths(self) -> Dict[str, Tuple[str, str]]:
        """Map of indexed path to ``(note_id, content_hash)``."""
        with read_session(self.session_factory, "all_indexed_paths") as session:
            rows = session.execute(select(DBNote.path, DBNote.id, DBNote.content_hash)).all()
        return {path: (note_id, digest) for path, note_id, digest in rows}

    def list_duplicates(self) -> List[BuildError]:
        """Duplicate-id diagnostics recorded by the last build pass."""
        with read_session(self.session_factory, "list_duplicates") as session:
            rows = session.execute(
                select(DBDuplicateId.path, DBDuplicateId.note_id, DBDuplicateId.first_path)
                .order_by(DBDuplicateId.path)
            ).all()
        return [
            BuildError(
                path=path,
                kind=BuildErrorKind.DUPLICATE_ID,
                message=DuplicateIdError(note_id, path, first_path).message,
                note_id=note_id,
                first_path=first_path,
            )
            for path, note_id, first_path in rows
        ]

    # ------------------------------------------------------------------
    # Search index maintenance and integrity
    # ------------------------------------------------------------------

    def rebuild_search_index(self) -> int:
        """Re-derive the FTS5 index from the note rows.

        Returns:
            Number of notes indexed.
        """
        try:
            return self._fts.rebuild()
        except SQLAlchemyDatabaseError as e:
            raise translate_db_error(e, "rebuild_search_index", write=True) from e

    @traced("integrity_check")
    def integrity_check(self, repair: bool = False) -> IntegrityReport:
        """Report broken links, unfiled notes, duplicate ids and FTS health.

        The report is advisory. With ``repair=True`` links to missing notes
        are deleted and a failing search index is rebuilt; note rows are
        never modified.
        """
        report = IntegrityReport()

        for source_id, source_path, target_id in self._links.find_broken():
            report.broken_links.append(IntegrityIssue(
                kind=IntegrityIssueKind.BROKEN_LINK,
                note_id=source_id,
                path=source_path,
                target_id=target_id,
                message=f"Link to missing note {target_id}",
            ))

        for note_id, path in self._topics.find_unfiled():
            report.orphans.append(IntegrityIssue(
                kind=IntegrityIssueKind.ORPHAN,
                note_id=note_id,
                path=path,
                message="Note has no topics",
            ))

        for dup in self.list_duplicates():
            report.duplicate_ids.append(IntegrityIssue(
                kind=IntegrityIssueKind.DUPLICATE_ID,
                note_id=dup.note_id,
                path=dup.path,
                message=f"ID already used by {dup.first_path}",
            ))

        report.fts_ok = self._fts.check_integrity()

        if repair:
            if report.broken_links:
                with write_session(self.session_factory, "repair_links") as session:
                    report.repaired_links = self._links.delete_broken(session)
                logger.info(f"Removed {report.repaired_links} dangling links")
            if not report.fts_ok:
                self.rebuild_search_index()
                report.fts_rebuilt = True
                report.fts_ok = self._fts.check_integrity()

        logger.info(
            f"Integrity check: {len(report.broken_links)} broken links, "
            f"{len(report.orphans)} orphans, {len(report.duplicate_ids)} duplicate ids, "
            f"fts_ok={report.fts_ok}"
        )
        return report
