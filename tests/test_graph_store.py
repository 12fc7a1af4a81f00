"""Tests for the graph store and its database schema."""
import pytest
from sqlalchemy import update

from roam_index.exceptions import DatabaseCorruptionError, NoteNotFoundError
from roam_index.models.db_models import DBMeta, SCHEMA_VERSION, init_db
from roam_index.models.schema import Link, NoteRecord, Ref
from roam_index.storage.graph_store import GraphStore


def _record(path, titles=(), targets=(), ref=None, hash="h"):
    return NoteRecord(
        path=path,
        hash=hash,
        titles=list(titles),
        ref=ref,
        links=[
            Link(source=path, target=target, excerpt=f"see {target}", offset=i * 10)
            for i, target in enumerate(targets)
        ],
    )


class TestReplaceNote:
    def test_round_trip(self, store):
        store.replace_note(_record("/n/a.org", ["A", "Alias"], ["/n/b.org"], Ref(key="k")))

        assert store.all_notes() == {"/n/a.org": "h"}
        assert store.hash_of("/n/a.org") == "h"
        assert store.titles_of("/n/a.org") == ["A", "Alias"]
        assert [link.target for link in store.forward_links_of("/n/a.org")] == ["/n/b.org"]
        assert store.resolve_key("k") == "/n/a.org"
        assert store.refs_of("/n/a.org") == [Ref(key="k", ref_type="ref")]

    def test_replace_drops_previous_rows(self, store):
        store.replace_note(_record("/n/a.org", ["Old"], ["/n/b.org", "/n/c.org"], Ref(key="old")))
        store.replace_note(_record("/n/a.org", ["New"], ["/n/d.org"], hash="h2"))

        assert store.hash_of("/n/a.org") == "h2"
        assert store.titles_of("/n/a.org") == ["New"]
        assert [link.target for link in store.forward_links_of("/n/a.org")] == ["/n/d.org"]
        assert store.backlinks_to("/n/b.org") == []
        assert store.resolve_key("old") is None

    def test_failed_replace_keeps_previous_state(self, store, monkeypatch):
        store.replace_note(_record("/n/a.org", ["Before"], ["/n/b.org"]))

        def boom(session, path, links):
            raise RuntimeError("disk full")

        monkeypatch.setattr(GraphStore, "_write_links", staticmethod(boom))
        with pytest.raises(RuntimeError):
            store.replace_note(_record("/n/a.org", ["After"], ["/n/c.org"], hash="h2"))

        assert store.hash_of("/n/a.org") == "h"
        assert store.titles_of("/n/a.org") == ["Before"]


class TestPerRelationWrites:
    def test_upsert_then_replace(self, store):
        store.upsert_note("/n/a.org", "h1")
        store.replace_titles("/n/a.org", ["A"])
        assert store.replace_links("/n/a.org", [Link(source="/n/a.org", target="/n/b.org")]) == 1
        store.replace_ref("/n/a.org", Ref(key="k", ref_type="cite"))

        assert store.titles_of("/n/a.org") == ["A"]
        assert store.resolve_key("k") == "/n/a.org"

        store.upsert_note("/n/a.org", "h2")
        assert store.all_notes() == {"/n/a.org": "h2"}

    def test_unknown_note_is_rejected(self, store):
        with pytest.raises(NoteNotFoundError):
            store.replace_titles("/n/ghost.org", ["Ghost"])
        with pytest.raises(NoteNotFoundError):
            store.replace_links("/n/ghost.org", [])
        with pytest.raises(NoteNotFoundError):
            store.replace_ref("/n/ghost.org", None)

    def test_ref_key_moves_to_new_owner(self, store):
        store.replace_note(_record("/n/a.org", ref=Ref(key="k")))
        store.replace_note(_record("/n/b.org", ref=Ref(key="k")))

        assert store.resolve_key("k") == "/n/b.org"
        assert store.refs_of("/n/a.org") == []

    def test_detach_ref(self, store):
        store.replace_note(_record("/n/a.org", ref=Ref(key="k")))
        store.replace_ref("/n/a.org", None)
        assert store.resolve_key("k") is None


class TestDelete:
    def test_cascade(self, store):
        store.replace_note(_record("/n/a.org", ["A"], ["/n/b.org"], Ref(key="k")))
        store.replace_note(_record("/n/b.org", ["B"], ["/n/a.org"]))

        assert store.delete_note("/n/a.org") is True

        assert not store.is_indexed("/n/a.org")
        assert store.titles_of("/n/a.org") == []
        assert store.backlinks_to("/n/b.org") == []
        assert store.resolve_key("k") is None
        # b's link to a belongs to b and stays
        assert [b.source for b in store.backlinks_to("/n/a.org")] == ["/n/b.org"]

    def test_delete_unknown(self, store):
        assert store.delete_note("/n/ghost.org") is False


class TestQueries:
    def test_backlinks_keep_duplicates_in_order(self, store):
        store.replace_note(_record("/n/b.org", targets=["/n/t.org", "/n/t.org"]))
        store.replace_note(_record("/n/a.org", targets=["/n/t.org"]))

        backlinks = store.backlinks_to("/n/t.org")
        assert [(b.source, b.offset) for b in backlinks] == [
            ("/n/a.org", 0),
            ("/n/b.org", 0),
            ("/n/b.org", 10),
        ]
        assert backlinks[0].excerpt == "see /n/t.org"

    def test_all_titles_includes_untitled(self, store):
        store.replace_note(_record("/n/a.org", ["A"]))
        store.replace_note(_record("/n/b.org"))
        assert store.all_titles() == {"/n/a.org": ["A"], "/n/b.org": []}

    def test_title_completions(self, store, notes_dir):
        titled = str(notes_dir / "a.org")
        untitled = str(notes_dir / "nested" / "b.org")
        store.replace_note(_record(titled, ["A", "Alias"]))
        store.replace_note(_record(untitled))

        assert store.all_title_completions() == [
            ("A", titled),
            ("Alias", titled),
            ("nested/b", untitled),
        ]

    def test_all_links(self, store):
        store.replace_note(_record("/n/a.org", targets=["/n/b.org", "/n/c.org"]))
        assert [(l.source, l.target) for l in store.all_links()] == [
            ("/n/a.org", "/n/b.org"),
            ("/n/a.org", "/n/c.org"),
        ]


class TestBulk:
    def test_apply_scan(self, store):
        store.replace_note(_record("/n/gone.org", ["Gone"], ["/n/a.org"]))

        links, deleted = store.apply_scan(
            [_record("/n/a.org", ["A"], ["/n/b.org"]), _record("/n/b.org", ["B"])],
            ["/n/gone.org", "/n/never.org"],
        )

        assert (links, deleted) == (1, 1)
        assert sorted(store.all_notes()) == ["/n/a.org", "/n/b.org"]
        assert store.backlinks_to("/n/a.org") == []

    def test_reset_replaces_the_whole_store(self, store):
        store.replace_note(_record("/n/gone.org", ["Gone"], ["/n/a.org"], Ref(key="k")))
        store.replace_note(_record("/n/a.org", ["Old A"], ["/n/gone.org"]))

        links, deleted = store.apply_scan(
            [_record("/n/a.org", ["A"], ["/n/b.org"])],
            ["/n/gone.org", "/n/never.org"],
            reset=True,
        )

        assert (links, deleted) == (1, 1)
        assert store.all_titles() == {"/n/a.org": ["A"]}
        assert store.resolve_key("k") is None
        assert store.counts() == {"files": 1, "titles": 1, "links": 1, "refs": 0}

    def test_clear_and_counts(self, store):
        store.replace_note(_record("/n/a.org", ["A"], ["/n/b.org"], Ref(key="k")))
        assert store.counts() == {"files": 1, "titles": 1, "links": 1, "refs": 1}

        store.clear()
        assert store.counts() == {"files": 0, "titles": 0, "links": 0, "refs": 0}

    def test_integrity_check_passes(self, store):
        store.check_integrity()


class TestSchema:
    def test_file_database_persists(self, tmp_path):
        url = f"sqlite:///{tmp_path / 'index.db'}"
        engine = init_db(url)
        GraphStore(engine).replace_note(_record("/n/a.org", ["A"]))
        engine.dispose()

        engine = init_db(url)
        assert GraphStore(engine).titles_of("/n/a.org") == ["A"]
        engine.dispose()

    def test_version_mismatch_recreates_tables(self, tmp_path):
        url = f"sqlite:///{tmp_path / 'index.db'}"
        engine = init_db(url)
        GraphStore(engine).replace_note(_record("/n/a.org", ["A"]))
        with engine.begin() as conn:
            conn.execute(
                update(DBMeta)
                .where(DBMeta.key == "schema_version")
                .values(value=str(SCHEMA_VERSION - 1))
            )
        engine.dispose()

        engine = init_db(url)
        assert GraphStore(engine).all_notes() == {}
        engine.dispose()

    def test_damaged_file_raises_corruption_error(self, tmp_path):
        db_path = tmp_path / "index.db"
        db_path.write_bytes(b"this is not a database file\n" * 200)

        with pytest.raises(DatabaseCorruptionError) as exc_info:
            init_db(f"sqlite:///{db_path}")
        assert exc_info.value.to_dict()["code_name"] == "DATABASE_CORRUPTED"

    def test_rebind_switches_database(self, store, tmp_path):
        store.replace_note(_record("/n/a.org", ["A"]))
        engine = init_db(f"sqlite:///{tmp_path / 'other.db'}")

        store.rebind(engine)

        assert store.engine is engine
        assert store.all_notes() == {}
        engine.dispose()
