"""Property-style checks over a generated note tree.

The tree is built from a fixed seed so the properties are checked against
the same data on every run.
"""
import random

import pytest
from sqlalchemy import text

from noteindex.models.schema import generate_id
from noteindex.services.index_builder import IndexBuilder
from noteindex.storage.note_repository import NoteIndexRepository

TOPICS = ["software", "software/architecture", "software/architecture/api",
          "software/testing", "writing", "writing/essays", "software-ish"]
TAGS = ["draft", "api", "idea", "todo", "review"]
WORDS = ["ledger", "quartz", "meadow", "vector", "harbor", "lantern", "pillar", "ember"]
RELS = ["parent", "see-also", "supports"]


@pytest.fixture
def note_tree(write_note, notes_dir):
    """Thirty notes with random topics, tags, aliases and links."""
    rng = random.Random(1234)
    ids = [generate_id() for _ in range(30)]
    for i, note_id in enumerate(ids):
        links = [
            {"id": rng.choice(ids), "rel": rng.sample(RELS, rng.randint(1, 2))}
            for _ in range(rng.randint(0, 3))
        ]
        write_note(
            f"{rng.choice(['a', 'b', 'c/d'])}/note-{i:02d}.md",
            f"{rng.choice(WORDS).title()} note {i}",
            note_id=note_id,
            body=" ".join(rng.choice(WORDS) for _ in range(20)),
            topics=rng.sample(TOPICS, rng.randint(0, 2)),
            tags=rng.sample(TAGS, rng.randint(0, 3)),
            aliases=[f"alias-{i}"] if i % 3 == 0 else None,
            links=links or None,
        )
    return ids


def _snapshot(repo):
    """Everything the query API can observe about an index."""
    notes = {n.id: n.model_dump() for n in repo.list_all()}
    return {
        "notes": notes,
        "topic_counts": repo.topic_counts(),
        "tag_counts": repo.tag_counts(),
        "rel_counts": repo.rel_counts(),
        "search": {w: [(r.note.id, round(r.score, 6)) for r in repo.search(w)] for w in WORDS},
        "backlinks": {i: [n.id for n in repo.backlinks(i)] for i in notes},
    }


def _row_counts(repo):
    tables = ["notes", "topics", "note_topics", "tags", "note_tags", "aliases", "links", "link_rels"]
    with repo.session_factory() as session:
        return {t: session.execute(text(f"SELECT COUNT(*) FROM {t}")).scalar() for t in tables}


class TestRebuildEquivalence:
    def test_full_rebuild_equals_incremental_from_empty(self, note_tree, notes_dir):
        with NoteIndexRepository.open(in_memory=True) as full, \
                NoteIndexRepository.open(in_memory=True) as incremental:
            IndexBuilder(full, notes_dir=notes_dir).full_rebuild()
            IndexBuilder(incremental, notes_dir=notes_dir).incremental_update()

            for note_id in note_tree:
                assert full.get(note_id) == incremental.get(note_id)
            assert _snapshot(full) == _snapshot(incremental)

    def test_incremental_after_edits_equals_full_rebuild(self, note_tree, notes_dir, write_note):
        with NoteIndexRepository.open(in_memory=True) as repo:
            builder = IndexBuilder(repo, notes_dir=notes_dir)
            builder.full_rebuild()

            files = sorted(notes_dir.rglob("*.md"))
            files[0].unlink()
            files[1].write_text("---\nbroken: [\n---\n")
            write_note("z/new.md", "Brand new", topics=["software"], tags=["idea"])
            write_note("a/aaa.md", "Steals an id", note_id=note_tree[-1])
            builder.incremental_update()
            after_incremental = _snapshot(repo)

            builder.full_rebuild()
            assert _snapshot(repo) == after_incremental

    def test_full_rebuild_idempotent(self, note_tree, notes_dir):
        with NoteIndexRepository.open(in_memory=True) as repo:
            builder = IndexBuilder(repo, notes_dir=notes_dir)
            builder.full_rebuild()
            first_counts, first = _row_counts(repo), _snapshot(repo)
            builder.full_rebuild()
            assert _row_counts(repo) == first_counts
            assert _snapshot(repo) == first


class TestQueryProperties:
    @pytest.fixture
    def built(self, note_tree, builder, repository):
        builder.full_rebuild()
        return repository

    def test_descendant_queries_are_unions(self, built, ids_of):
        topics = built.all_topics()
        for topic in topics:
            deep = set(ids_of(built.list_by_topic(topic, True)))
            assert set(ids_of(built.list_by_topic(topic, False))) <= deep
            expected = set()
            for other in topics:
                if other == topic or other.startswith(topic + "/"):
                    expected |= set(ids_of(built.list_by_topic(other, False)))
            assert deep == expected

    def test_tag_pairs_are_intersections(self, built, ids_of):
        for t1 in TAGS:
            for t2 in TAGS:
                expected = set(ids_of(built.list_by_tags([t1]))) & set(ids_of(built.list_by_tags([t2])))
                assert set(ids_of(built.list_by_tags([t1, t2]))) == expected

    def test_counts_match_listings(self, built):
        for count in built.topic_counts():
            assert count.exact_count == len(built.list_by_topic(count.topic, False))
            assert count.total_count == len(built.list_by_topic(count.topic, True))
        for count in built.tag_counts():
            assert count.count == len(built.list_by_tags([count.tag]))
