"""Builds and refreshes the index from the markdown note tree."""

import logging
import time
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Tuple, Union

from noteindex.exceptions import DuplicateIdError, ParseError
from noteindex.models.schema import (
    BuildError,
    BuildErrorKind,
    BuildResult,
    FileResult,
    IndexState,
    ParsedNote,
    UpdateResult,
)
from noteindex.observability import timed_operation
from noteindex.storage.markdown_parser import MarkdownParser, scan_note_files
from noteindex.storage.note_repository import NoteIndexRepository
from noteindex.utils import content_hash

logger = logging.getLogger(__name__)


class ProgressReporter(Protocol):
    """Receives per-file outcomes while a build pass runs."""

    def on_file(self, path: str, result: FileResult) -> None:
        ...

    def on_complete(self, indexed: int, errors: List[BuildError]) -> None:
        ...


class IndexBuilder:
    """Derives the index from the files under a notes root.

    Two passes are available. ``full_rebuild`` re-reads every file and swaps
    the index contents in one transaction. ``incremental_update`` hashes
    every file but parses only new or changed ones. Both apply the same
    rules, so they leave the index in the same state.

    Files are processed in sorted relative-path order. When two files
    declare the same id the first one wins; the others are reported as
    ``DUPLICATE_ID`` errors and left out.
    """

    def __init__(
        self,
        repository: NoteIndexRepository,
        notes_dir: Optional[Union[str, Path]] = None,
        reader: Optional[MarkdownParser] = None,
    ):
        self.repository = repository
        self.notes_dir = Path(notes_dir) if notes_dir else repository.config.get_notes_dir()
        self.reader = reader or MarkdownParser()

    def full_rebuild(self, progress: Optional[ProgressReporter] = None) -> BuildResult:
        """Rebuild the whole index from the files on disk.

        Unreadable or invalid files are reported in ``BuildResult.errors`` and
        never abort the pass.

        Raises:
            StorageError: If the notes root is missing or the write fails.
        """
        start = time.perf_counter()
        with timed_operation("full_rebuild", notes_dir=self.notes_dir) as op:
            paths = scan_note_files(self.notes_dir)
            staged: List[Tuple[ParsedNote, str]] = []
            errors: List[BuildError] = []
            duplicates: List[BuildError] = []
            first_paths: Dict[str, str] = {}

            for rel_path in paths:
                parsed, error = self._read(rel_path)
                if error is None:
                    error = self._claim_id(parsed.note.id, rel_path, first_paths)
                    if error is not None:
                        duplicates.append(error)
                if error is not None:
                    errors.append(error)
                    self._report(progress, rel_path, FileResult.ERROR)
                    continue
                staged.append((parsed, rel_path))
                self._report(progress, rel_path, FileResult.INDEXED)

            indexed = self.repository.replace_all(staged, duplicates)
            op["indexed"] = indexed
            op["errors"] = len(errors)

        result = BuildResult(
            indexed=indexed,
            errors=errors,
            duration_ms=(time.perf_counter() - start) * 1000,
        )
        if progress is not None:
            progress.on_complete(result.indexed, result.errors)
        logger.info(
            f"Full rebuild of {self.notes_dir}: {result.indexed} notes indexed, "
            f"{result.error_count} errors ({result.duration_ms:.0f}ms)"
        )
        return result

    def incremental_update(self, progress: Optional[ProgressReporter] = None) -> UpdateResult:
        """Bring the index in line with the files on disk.

        Every file is hashed. A file whose path is indexed with the same hash
        is skipped without parsing. Everything else is parsed and upserted,
        and index rows for vanished or now-invalid files are removed. All
        changes are committed together.

        Raises:
            StorageError: If the notes root is missing or the write fails.
        """
        start = time.perf_counter()
        result = UpdateResult()
        with timed_operation("incremental_update", notes_dir=self.notes_dir) as op:
            indexed = self.repository.all_indexed_paths()
            paths = scan_note_files(self.notes_dir)
            on_disk = set(paths)

            remove_paths = sorted(p for p in indexed if p not in on_disk)
            staged: List[Tuple[ParsedNote, str]] = []
            duplicates: List[BuildError] = []
            first_paths: Dict[str, str] = {}

            for rel_path in paths:
                previous = indexed.get(rel_path)
                try:
                    data = (self.notes_dir / rel_path).read_bytes()
                except OSError as e:
                    error = BuildError(
                        path=rel_path,
                        kind=BuildErrorKind.IO,
                        message=f"Failed to read file: {e}",
                    )
                    self._fail(result, progress, error, remove_paths, previous)
                    continue

                if previous is not None and previous[1] == content_hash(data):
                    # Unchanged; the indexed id still takes part in duplicate detection
                    error = self._claim_id(previous[0], rel_path, first_paths)
                    if error is not None:
                        duplicates.append(error)
                        self._fail(result, progress, error, remove_paths, previous)
                        continue
                    result.unchanged += 1
                    self._report(progress, rel_path, FileResult.SKIPPED)
                    continue

                parsed, error = self._parse(data, rel_path)
                if error is None:
                    error = self._claim_id(parsed.note.id, rel_path, first_paths)
                    if error is not None:
                        duplicates.append(error)
                if error is not None:
                    self._fail(result, progress, error, remove_paths, previous)
                    continue

                staged.append((parsed, rel_path))
                if previous is None:
                    result.added += 1
                else:
                    result.modified += 1
                self._report(progress, rel_path, FileResult.INDEXED)

            result.removed = self.repository.apply_changes(remove_paths, staged, duplicates)
            op["added"] = result.added
            op["modified"] = result.modified
            op["removed"] = result.removed

        result.duration_ms = (time.perf_counter() - start) * 1000
        if progress is not None:
            progress.on_complete(result.added + result.modified, result.errors)
        logger.info(
            f"Incremental update of {self.notes_dir}: +{result.added} ~{result.modified} "
            f"-{result.removed} ={result.unchanged}, {len(result.errors)} errors "
            f"({result.duration_ms:.0f}ms)"
        )
        return result

    def ensure_index(
        self, progress: Optional[ProgressReporter] = None
    ) -> Union[BuildResult, UpdateResult]:
        """Bring the store to the built state, choosing the cheapest safe pass.

        A corrupt database file is reset and rebuilt. A damaged search index
        is re-derived and the store rebuilt. An uninitialized store gets a
        full rebuild; a built, healthy store an incremental update.
        """
        health = self.repository.check_database_health()
        if not health["sqlite_ok"]:
            logger.warning(
                f"Index database failed its health check ({health['critical_issues']}); "
                "resetting the store"
            )
            self.repository.reset_store()
            return self.full_rebuild(progress)
        if not health["fts_ok"]:
            logger.warning("Search index damaged; rebuilding it before a full rebuild")
            self.repository.rebuild_search_index()
            return self.full_rebuild(progress)
        if self.repository.state is IndexState.UNINITIALIZED:
            return self.full_rebuild(progress)
        return self.incremental_update(progress)

    def _read(self, rel_path: str) -> Tuple[Optional[ParsedNote], Optional[BuildError]]:
        try:
            return self.reader.read_note(self.notes_dir / rel_path, display_path=rel_path), None
        except ParseError as e:
            return None, self._parse_failure(rel_path, e)

    def _parse(self, data: bytes, rel_path: str) -> Tuple[Optional[ParsedNote], Optional[BuildError]]:
        try:
            return self.reader.parse_bytes(data, rel_path), None
        except ParseError as e:
            return None, self._parse_failure(rel_path, e)

    @staticmethod
    def _parse_failure(rel_path: str, error: ParseError) -> BuildError:
        logger.warning(f"Skipping {rel_path}: {error.message}")
        return BuildError(path=rel_path, kind=BuildErrorKind(error.kind), message=error.message)

    @staticmethod
    def _claim_id(note_id: str, rel_path: str, first_paths: Dict[str, str]) -> Optional[BuildError]:
        first = first_paths.get(note_id)
        if first is None:
            first_paths[note_id] = rel_path
            return None
        duplicate = DuplicateIdError(note_id, rel_path, first)
        logger.warning(f"Skipping {rel_path}: {duplicate}")
        return BuildError(
            path=rel_path,
            kind=BuildErrorKind.DUPLICATE_ID,
            message=duplicate.message,
            note_id=note_id,
            first_path=first,
        )

    def _fail(
        self,
        result: UpdateResult,
        progress: Optional[ProgressReporter],
        error: BuildError,
        remove_paths: List[str],
        previous: Optional[Tuple[str, str]],
    ) -> None:
        # A file that no longer yields a valid note drops out of the index
        if previous is not None:
            remove_paths.append(error.path)
        result.errors.append(error)
        self._report(progress, error.path, FileResult.ERROR)

    @staticmethod
    def _report(progress: Optional[ProgressReporter], path: str, outcome: FileResult) -> None:
        if progress is not None:
            progress.on_file(path, outcome)
