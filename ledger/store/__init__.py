from ledger.store.blobs import BlobInfo, BlobStore, LocalBlobStore, PresignedUrl, S3BlobStore
from ledger.store.kv import KeyValueStore, Page, Record, SqliteKeyValueStore

__all__ = [
    "BlobInfo",
    "BlobStore",
    "KeyValueStore",
    "LocalBlobStore",
    "Page",
    "PresignedUrl",
    "Record",
    "S3BlobStore",
    "SqliteKeyValueStore",
]
