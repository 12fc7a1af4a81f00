"""Common test fixtures for roam-index."""

import logging
from pathlib import Path

import pytest

from roam_index.config import RoamConfig
from roam_index.models.db_models import init_db
from roam_index.services.caches import DerivedCaches
from roam_index.services.index_builder import IndexBuilder
from roam_index.services.maintainer import ConsistencyMaintainer
from roam_index.services.roam_index import RoamIndex
from roam_index.storage.extractor import LinkExtractor
from roam_index.storage.files import ContentReader, FileDiscoverer
from roam_index.storage.graph_store import GraphStore
from roam_index.utils import path_to_slug


@pytest.fixture(autouse=True)
def _isolate_roam_index_logger():
    """Drop handlers a test added to the ``roam_index`` logger (e.g. via main())."""
    logger = logging.getLogger("roam_index")
    handlers, level = list(logger.handlers), logger.level
    yield
    for handler in logger.handlers:
        if handler not in handlers:
            handler.close()
    logger.handlers = handlers
    logger.setLevel(level)


@pytest.fixture
def notes_dir(tmp_path):
    """An empty, fully resolved note directory."""
    directory = tmp_path / "notes"
    directory.mkdir()
    return directory.resolve()


@pytest.fixture
def write_note(notes_dir):
    """Write a note relative to ``notes_dir`` and return its resolved path."""

    def _write(relative: str, content: str = "") -> Path:
        path = notes_dir / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        return path.resolve()

    return _write


@pytest.fixture
def roam_config(notes_dir, monkeypatch):
    """Config for ``notes_dir`` with an in-memory database."""
    for name in ("ROAM_FILE_EXTENSIONS", "ROAM_IGNORE_PATTERNS",
                 "ROAM_FILE_EXCLUDE_REGEXP", "ROAM_TITLE_PROPERTY",
                 "ROAM_ALIAS_PROPERTY", "ROAM_KEY_PROPERTY"):
        monkeypatch.delenv(name, raising=False)
    return RoamConfig(directory=notes_dir, in_memory_db=True)


@pytest.fixture
def engine():
    """In-memory SQLite engine with the current schema."""
    engine = init_db("sqlite://")
    yield engine
    engine.dispose()


@pytest.fixture
def store(engine, notes_dir):
    return GraphStore(engine, slugify=lambda path: path_to_slug(path, notes_dir))


@pytest.fixture
def discoverer(roam_config):
    return FileDiscoverer.from_config(roam_config)


@pytest.fixture
def extractor(roam_config, discoverer):
    return LinkExtractor.from_config(roam_config, discoverer)


@pytest.fixture
def caches():
    return DerivedCaches()


@pytest.fixture
def builder(store, discoverer, extractor, caches):
    reader = ContentReader(discoverer)
    return IndexBuilder(store, discoverer, reader, extractor, caches)


@pytest.fixture
def maintainer(builder, caches):
    return ConsistencyMaintainer(builder, caches)


@pytest.fixture
def index(roam_config):
    """A RoamIndex over ``notes_dir`` that has not been built yet."""
    index = RoamIndex(roam_config)
    yield index
    index.close()
