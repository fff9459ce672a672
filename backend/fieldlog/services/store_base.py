"""
FieldLog Backend: Abstract Version Store Interface
====================================================

What:  Abstract base class for the multi-writer, version-linked key-value
       store the observation service and the replication engine consume.
How:   Concrete implementations inherit from VersionStore. SqlVersionStore
       (sql_store.py) is the one shipped with the backend.

Contract:
    - Every write produces a new immutable version with an opaque id.
    - A version links to the versions it supersedes; the versions of a key
      that nothing links to form its head set.
    - Writes are conditional: explicit parent links must all be current
      heads, otherwise StoreConflictError is raised and nothing is written.
    - Failures other than the documented ones surface as StoreError.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Tuple


@dataclass
class StoredNode:
    """A version as returned by the store: logical key, version id, value."""

    key: str
    version: str
    value: Dict[str, Any]
    links: List[str] = field(default_factory=list)


@dataclass
class BatchOp:
    """
    One operation of an atomic batch.

    type:  "put" writes `value` under `key`, superseding all current heads;
           "del" removes `key` and its history.
    """

    type: str
    key: str
    value: Optional[Dict[str, Any]] = None


class VersionStore(ABC):
    """Interface of the versioned key-value store."""

    @abstractmethod
    async def create(self, value: Dict[str, Any]) -> StoredNode:
        """Write `value` as the first version of a freshly allocated key."""
        ...

    @abstractmethod
    async def put(
        self,
        key: str,
        value: Dict[str, Any],
        links: Optional[List[str]] = None,
    ) -> StoredNode:
        """
        Write a new version of `key`.

        Args:
            links: Parent versions. None supersedes every current head.
                   An explicit list must only contain current heads of `key`.

        Raises:
            StoreConflictError: An explicit link is not a current head.
        """
        ...

    @abstractmethod
    async def get(self, key: str) -> Dict[str, Dict[str, Any]]:
        """Head set of `key` as {version: value}; empty when unknown."""
        ...

    @abstractmethod
    async def get_by_version(self, version: str) -> StoredNode:
        """
        Raises:
            StoreNotFoundError: No such version.
        """
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove `key` and every version of it. Deleting an absent key succeeds."""
        ...

    @abstractmethod
    async def batch(self, ops: Iterable[BatchOp]) -> List[StoredNode]:
        """Apply all `ops` atomically; returns the nodes written by puts."""
        ...

    @abstractmethod
    def iter_heads(self) -> AsyncIterator[Tuple[str, Dict[str, Dict[str, Any]]]]:
        """Yield (key, {version: value}) for every key in the store."""
        ...

    @abstractmethod
    async def export_versions(self) -> List[Dict[str, Any]]:
        """Every version as {version, key, value, links}, oldest first."""
        ...

    @abstractmethod
    async def import_versions(self, records: Iterable[Dict[str, Any]]) -> int:
        """
        Merge versions written elsewhere.

        Unknown versions are inserted and the head sets of the affected keys
        recomputed. Returns the number of versions that were new.
        """
        ...

    @abstractmethod
    async def ping(self) -> None:
        """Raise if the store cannot be reached."""
        ...
