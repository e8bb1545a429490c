"""Sync bookkeeping. A single global key/value bag, not scoped per tenant."""
from sqlmodel import SQLModel, Field

SYNC_META_KEYS = ("last_sync_time", "last_sync_guid", "last_sync_from", "last_sync_to")


class SyncMeta(SQLModel, table=True):
    __tablename__ = "sync_meta"

    key: str = Field(primary_key=True)
    value: str = Field(default="")
