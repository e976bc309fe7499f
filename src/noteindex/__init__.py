"""
noteindex - a derived SQLite index over a directory of markdown notes.

Notes are flat markdown files with YAML frontmatter (topics, tags, aliases,
typed links). The index is a secondary, always-reconstructable structure that
supports hierarchical topic browsing, tag intersection, weighted full-text
search and a typed backlink graph.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("noteindex")
except PackageNotFoundError:
    __version__ = "0.1.0"
