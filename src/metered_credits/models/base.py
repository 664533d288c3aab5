from __future__ import annotations

from typing import Any, ClassVar, Dict, Optional

from pydantic import BaseModel


class DBSerializableModel(BaseModel):
    """
    Base Pydantic model for documents persisted by a `BaseDBManager`.

    Subclasses declare the logical collection they live in; DB adapters
    use `serialize_for_db` as the single place that controls how a
    document is written.
    """

    # Logical collection / table name; subclasses should override
    collection_name: ClassVar[str]

    # Optional explicit primary key field; defaults to "id" if present
    primary_key: ClassVar[Optional[str]] = "id"

    def serialize_for_db(self) -> Dict[str, Any]:
        """
        Convert to a dict suitable for DB persistence.

        DB adapters can still post-process this if needed (e.g. `_id`).
        """
        return self.model_dump(by_alias=True, exclude_none=True)


class VersionedModel(DBSerializableModel):
    """
    Document guarded by optimistic concurrency.

    `version` is bumped by the DB manager on every committed write; a write
    carrying a stale version is rejected with `ConcurrentUpdateError`.
    """

    version: int = 0
