from fileflow.store.base import (
    ChangeFeed,
    ChangeOp,
    RawChange,
    RecordNotFoundError,
    RecordStore,
    RecordStoreError,
)
from fileflow.store.factory import get_record_store

__all__ = [
    "RecordStore", "ChangeFeed", "ChangeOp", "RawChange",
    "RecordStoreError", "RecordNotFoundError", "get_record_store",
]
