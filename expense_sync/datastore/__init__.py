from expense_sync.datastore.storage import (
    KeyValueStorage,
    MemoryStorage,
    SqlStorage,
    StorageError,
)

__all__ = ["KeyValueStorage", "MemoryStorage", "SqlStorage", "StorageError"]
