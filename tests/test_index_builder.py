"""Tests for the full incremental scan."""
import os
import threading

import pytest

from roam_index.exceptions import ConfigurationError, ScanCancelledError
from roam_index.models.schema import ScanStats
from roam_index.services.index_builder import IndexBuilder
from roam_index.storage.files import ContentReader
from tests.fakes import failing_decryptor, reverse_cipher


@pytest.fixture
def corpus(write_note):
    """f1 links to f2 and nested/f1; nested/f1 has no title."""
    return {
        "f1": write_note(
            "f1.org",
            "#+title: First\n\nSee [[file:f2.org][Second]] and [[file:nested/f1.org]].\n",
        ),
        "f2": write_note("f2.org", "#+title: Second\n#+roam_key: cite:doe2020\n"),
        "nested": write_note("nested/f1.org", "Just text.\n"),
    }


class TestBuild:
    def test_scenario(self, builder, store, caches, notes_dir, corpus):
        stats = builder.build(notes_dir)

        assert (stats.files, stats.links, stats.titles, stats.refs, stats.deleted) == (3, 2, 2, 1, 0)
        f1, f2, nested = (str(corpus[k]) for k in ("f1", "f2", "nested"))
        assert [b.source for b in store.backlinks_to(f2)] == [f1]
        assert [b.source for b in store.backlinks_to(nested)] == [f1]
        assert ("First", f1) in store.all_title_completions()
        assert ("nested/f1", nested) in store.all_title_completions()
        assert store.resolve_key("doe2020") == f2
        assert caches.backlink_sources(f2) == {f1}
        assert caches.forward_links(f1) == [f2, nested]

    def test_backlink_context(self, builder, store, notes_dir, corpus):
        builder.build(notes_dir)
        text = corpus["f1"].read_text()
        (backlink,) = store.backlinks_to(str(corpus["f2"]))
        assert backlink.offset == text.index("[[file:f2.org]")
        assert backlink.excerpt == "See [[file:f2.org][Second]] and [[file:nested/f1.org]]."

    def test_second_build_is_a_no_op(self, builder, store, notes_dir, corpus):
        builder.build(notes_dir)
        before = (store.all_notes(), store.all_links(), store.all_titles())

        stats = builder.build(notes_dir)

        assert not stats.changed
        assert (stats.files, stats.links, stats.deleted, stats.skipped) == (0, 0, 0, 3)
        assert (store.all_notes(), store.all_links(), store.all_titles()) == before

    def test_touching_a_file_does_not_reextract(self, builder, notes_dir, corpus):
        builder.build(notes_dir)
        os.utime(corpus["f2"], (1, 1))
        assert builder.build(notes_dir).files == 0

    def test_changed_content_is_reextracted(self, builder, store, notes_dir, corpus):
        builder.build(notes_dir)
        corpus["f1"].write_text("#+title: First v2\n")

        stats = builder.build(notes_dir)

        assert (stats.files, stats.links, stats.skipped) == (1, 0, 2)
        assert store.titles_of(str(corpus["f1"])) == ["First v2"]
        assert store.backlinks_to(str(corpus["f2"])) == []

    def test_vanished_file_is_deleted(self, builder, store, caches, notes_dir, corpus):
        builder.build(notes_dir)
        corpus["f1"].unlink()

        stats = builder.build(notes_dir)

        assert stats.deleted == 1
        assert not store.is_indexed(str(corpus["f1"]))
        assert store.backlinks_to(str(corpus["f2"])) == []
        assert caches.backlink_sources(str(corpus["f2"])) == set()

    def test_full_build_reextracts_every_note(self, builder, store, notes_dir, corpus):
        builder.build(notes_dir)
        before = (store.all_notes(), store.all_links(), store.all_titles())

        stats = builder.build(notes_dir, full=True)

        assert (stats.files, stats.skipped, stats.deleted) == (3, 0, 0)
        assert (store.all_notes(), store.all_links(), store.all_titles()) == before

    def test_full_build_drops_vanished_notes(self, builder, store, caches, notes_dir, corpus):
        builder.build(notes_dir)
        corpus["nested"].unlink()

        stats = builder.build(notes_dir, full=True)

        assert stats.deleted == 1
        assert sorted(store.all_notes()) == sorted([str(corpus["f1"]), str(corpus["f2"])])
        assert caches.forward_links(str(corpus["f1"])) == [str(corpus["f2"]), str(corpus["nested"])]

    def test_unreadable_file_is_skipped_and_kept(self, builder, store, notes_dir, corpus, monkeypatch):
        builder.build(notes_dir)
        corpus["f1"].write_text("#+title: Changed\n")
        original_read = builder.reader.read

        def flaky_read(path):
            if str(path) == str(corpus["f1"]):
                raise PermissionError("denied")
            return original_read(path)

        monkeypatch.setattr(builder.reader, "read", flaky_read)
        stats = builder.build(notes_dir)

        assert (stats.failed, stats.deleted) == (1, 0)
        assert store.titles_of(str(corpus["f1"])) == ["First"]

    def test_missing_root(self, builder, tmp_path):
        with pytest.raises(ConfigurationError):
            builder.build(tmp_path / "missing")


class TestCancellation:
    def test_cancel_before_start(self, builder, store, notes_dir, corpus):
        event = threading.Event()
        event.set()
        with pytest.raises(ScanCancelledError):
            builder.build(notes_dir, cancel_event=event)
        assert store.all_notes() == {}

    def test_cancel_mid_scan_leaves_store_unchanged(self, builder, store, notes_dir, corpus, monkeypatch):
        builder.build(notes_dir)
        for path in corpus.values():
            path.write_text(path.read_text() + "\nedited\n")
        before = (store.all_notes(), store.all_links(), store.all_titles())

        event = threading.Event()
        original_read = builder.reader.read

        def read_then_cancel(path):
            event.set()
            return original_read(path)

        monkeypatch.setattr(builder.reader, "read", read_then_cancel)
        with pytest.raises(ScanCancelledError) as exc_info:
            builder.build(notes_dir, cancel_event=event)

        assert exc_info.value.processed == 1
        assert (store.all_notes(), store.all_links(), store.all_titles()) == before


class TestEncryptedNotes:
    def _builder(self, builder, decryptor):
        reader = ContentReader(builder.discoverer, decryptor=decryptor)
        return IndexBuilder(builder.store, builder.discoverer, reader, builder.extractor)

    def test_without_decryptor_indexed_by_hash(self, builder, store, notes_dir):
        secret = notes_dir / "secret.org.gpg"
        secret.write_bytes(b"garbage")
        stats = builder.build(notes_dir)
        assert stats.files == 1
        assert store.is_indexed(str(secret))
        assert store.titles_of(str(secret)) == []

    def test_with_decryptor(self, builder, store, notes_dir):
        secret = notes_dir / "secret.org.gpg"
        secret.write_bytes(reverse_cipher(b"#+title: Hidden\n[[file:plain.org]]\n"))

        self._builder(builder, reverse_cipher).build(notes_dir)

        assert store.titles_of(str(secret)) == ["Hidden"]
        assert [l.target for l in store.forward_links_of(str(secret))] == [str(notes_dir / "plain.org")]

    def test_failing_decryptor(self, builder, store, notes_dir):
        secret = notes_dir / "secret.org.gpg"
        secret.write_bytes(b"whatever")
        stats = self._builder(builder, failing_decryptor).build(notes_dir)
        assert stats.files == 1
        assert store.titles_of(str(secret)) == []


def test_scan_stats_str():
    stats = ScanStats(files=3, links=2, titles=2, refs=1, deleted=0)
    assert str(stats) == "files: 3, links: 2, titles: 2, refs: 1, deleted: 0"
