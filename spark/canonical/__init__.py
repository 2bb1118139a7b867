"""Canonical event log: objects, events, blocks."""

from spark.canonical.records import (
    BlockData,
    ConvertedData,
    EventData,
    EventFilters,
    ObjectData,
    StoredBlock,
    StoredEvent,
    StoredObject,
)
from spark.canonical.store import CanonicalStore, InMemoryCanonicalStore
from spark.canonical.values import decode_value, encode_value
from spark.canonical.writer import IngestReport, ingest_items, write_converted, write_event

__all__ = [
    "BlockData",
    "CanonicalStore",
    "ConvertedData",
    "EventData",
    "EventFilters",
    "InMemoryCanonicalStore",
    "IngestReport",
    "ObjectData",
    "StoredBlock",
    "StoredEvent",
    "StoredObject",
    "decode_value",
    "encode_value",
    "ingest_items",
    "write_converted",
    "write_event",
]
