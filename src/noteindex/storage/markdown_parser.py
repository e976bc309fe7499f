"""Reading notes from markdown files with YAML frontmatter.

Turns raw file bytes into a ``ParsedNote`` (metadata, body and content
hash) and enumerates the note files below a notes root. Serialization
back to markdown is provided for tools and tests that create notes.
"""
import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import frontmatter
import yaml
from pydantic import ValidationError

from noteindex.exceptions import ErrorCode, ParseError, StorageError
from noteindex.models.schema import Note, ParsedNote
from noteindex.utils import content_hash

logger = logging.getLogger(__name__)

NOTE_EXTENSION = ".md"

_UTF8_BOM = b"\xef\xbb\xbf"
_UTF16_BOMS = (b"\xff\xfe", b"\xfe\xff")

# A carriage return that does not start a CRLF pair
_LONE_CR = re.compile(r"\r(?!\n)")


class MarkdownParser:
    """Parses notes from markdown with a leading ``---`` YAML block."""

    def read_note(self, path: Union[str, Path], display_path: Optional[str] = None) -> ParsedNote:
        """Read and parse a note file.

        The content hash is computed over the raw bytes on disk, before any
        BOM stripping or decoding.

        Args:
            path: Filesystem path of the note.
            display_path: Path used in error messages (defaults to ``path``).

        Raises:
            ParseError: If the file cannot be read, decoded or parsed.
        """
        label = display_path or str(path)
        try:
            data = Path(path).read_bytes()
        except OSError as e:
            raise ParseError(
                f"Failed to read file: {e}",
                path=label,
                code=ErrorCode.FILE_READ_FAILED,
                original_error=e,
            )
        return self.parse_bytes(data, label)

    def parse_bytes(self, data: bytes, path: Optional[str] = None) -> ParsedNote:
        """Parse raw file bytes into a ``ParsedNote``."""
        text = self.decode(data, path)
        note, body = self._parse_text(text, path)
        return ParsedNote(note=note, body=body, content_hash=content_hash(data))

    def parse_note(self, content: str) -> ParsedNote:
        """Parse markdown content held in memory.

        The hash is taken over the UTF-8 encoding of ``content``.
        """
        note, body = self._parse_text(content, None)
        return ParsedNote(
            note=note, body=body, content_hash=content_hash(content.encode("utf-8"))
        )

    @staticmethod
    def decode(data: bytes, path: Optional[str] = None) -> str:
        """Decode note bytes as UTF-8.

        A UTF-8 byte-order mark is dropped. UTF-16 content, invalid UTF-8
        and old Mac style CR-only line endings are rejected.

        Raises:
            ParseError: With code ``INVALID_ENCODING``.
        """
        if data.startswith(_UTF16_BOMS):
            raise ParseError(
                "File is UTF-16 encoded; notes must be UTF-8",
                path=path,
                code=ErrorCode.INVALID_ENCODING,
            )
        if data.startswith(_UTF8_BOM):
            data = data[len(_UTF8_BOM):]
        try:
            text = data.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ParseError(
                f"File is not valid UTF-8 (byte {e.start})",
                path=path,
                code=ErrorCode.INVALID_ENCODING,
                original_error=e,
            )
        if _LONE_CR.search(text):
            raise ParseError(
                "File uses CR-only line endings; use LF or CRLF",
                path=path,
                code=ErrorCode.INVALID_ENCODING,
            )
        return text

    def render_to_markdown(self, note: Note, body: str = "") -> str:
        """Serialize a note and its body to markdown with frontmatter."""
        metadata: Dict[str, Any] = {
            "id": note.id,
            "title": note.title,
            "created": note.created.isoformat(),
            "modified": note.modified.isoformat(),
        }
        if note.description:
            metadata["description"] = note.description
        if note.topics:
            metadata["topics"] = note.topic_paths
        if note.aliases:
            metadata["aliases"] = list(note.aliases)
        if note.tags:
            metadata["tags"] = note.tag_names
        if note.links:
            metadata["links"] = [self._link_to_dict(link) for link in note.links]

        post = frontmatter.Post(body, **metadata)
        return frontmatter.dumps(post, sort_keys=False) + "\n"

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _link_to_dict(link) -> Dict[str, Any]:
        entry: Dict[str, Any] = {"id": link.target_id, "rel": list(link.rels)}
        if link.context:
            entry["note"] = link.context
        return entry

    @staticmethod
    def _parse_text(text: str, path: Optional[str]):
        if not text.startswith("---"):
            raise ParseError(
                "Missing opening frontmatter delimiter '---'",
                path=path,
                code=ErrorCode.MISSING_FRONTMATTER,
            )

        try:
            metadata, body = frontmatter.parse(text)
        except (yaml.YAMLError, ValueError, TypeError) as e:
            # Constructors for timestamps and similar values raise plain ValueError
            raise ParseError(
                f"Invalid YAML in frontmatter: {e}",
                path=path,
                code=ErrorCode.PARSE_FAILED,
                original_error=e,
            )

        # python-frontmatter returns empty metadata when the block is unterminated
        if not metadata:
            raise ParseError(
                "Missing closing frontmatter delimiter or empty frontmatter",
                path=path,
                code=ErrorCode.MISSING_FRONTMATTER,
            )

        try:
            note = Note.model_validate(metadata)
        except ValidationError as e:
            missing = [
                ".".join(str(p) for p in err["loc"])
                for err in e.errors()
                if err["type"] == "missing"
            ]
            if missing:
                raise ParseError(
                    f"Missing required field(s): {', '.join(missing)}",
                    path=path,
                    code=ErrorCode.MISSING_REQUIRED_FIELD,
                    original_error=e,
                )
            first = e.errors()[0]
            location = ".".join(str(p) for p in first["loc"])
            raise ParseError(
                f"Invalid frontmatter field '{location}': {first['msg']}",
                path=path,
                code=ErrorCode.PARSE_FAILED,
                original_error=e,
            )

        return note, body


def scan_note_files(root: Union[str, Path]) -> List[str]:
    """List note files below ``root`` as sorted relative POSIX paths.

    Only ``.md`` files are returned. Hidden files and directories (leading
    ``.``) below the root are skipped. Symlinks are followed; a directory
    reached twice through links is walked once.

    Raises:
        StorageError: If ``root`` does not exist or is not a directory.
    """
    root_path = Path(root)
    if not root_path.is_dir():
        raise StorageError(
            f"Notes directory does not exist: {root_path}",
            operation="scan",
            path=str(root_path),
            code=ErrorCode.NOTES_DIR_NOT_FOUND,
        )

    found: List[str] = []
    visited = set()
    for dirpath, dirnames, filenames in os.walk(root_path, followlinks=True):
        real = os.path.realpath(dirpath)
        if real in visited:
            dirnames[:] = []
            continue
        visited.add(real)

        dirnames[:] = [d for d in dirnames if not d.startswith(".")]
        rel_dir = Path(dirpath).relative_to(root_path)
        for name in filenames:
            if name.startswith(".") or not name.endswith(NOTE_EXTENSION):
                continue
            full = os.path.join(dirpath, name)
            if not os.path.isfile(full):
                continue
            found.append((rel_dir / name).as_posix())

    found.sort()
    logger.debug(f"Scanned {root_path}: {len(found)} note files")
    return found
