"""Storage layer for roam-index: discovery, parsing, extraction and the graph store."""

from roam_index.storage.extractor import LinkExtractor
from roam_index.storage.files import ContentReader, FileDiscoverer
from roam_index.storage.graph_store import GraphStore

__all__ = [
    "ContentReader",
    "FileDiscoverer",
    "GraphStore",
    "LinkExtractor",
]
