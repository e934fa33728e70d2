# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Credential store contract.

The rotation engine treats the store as the single source of truth: every
mutation is written back before the engine releases its lock. Stores hand
out copies, so changes are only visible after update()/bulk_update().
"""

import logging
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional

from .errors import InvalidArgumentError
from .types import KeyQuery, KeyRecord

lib_logger = logging.getLogger("key_rotator")

LOOKUP_FIELDS = ("id", "secret")


class CredentialStore(ABC):
    """Persistent CRUD + bulk update over key records."""

    @abstractmethod
    async def find_active(self, query: KeyQuery) -> List[KeyRecord]:
        """Returns records matching the query."""

    @abstractmethod
    async def find_by_field(self, field: str, value: str) -> Optional[KeyRecord]:
        """Returns the record whose ``field`` (id or secret) equals ``value``."""

    @abstractmethod
    async def list_all(self) -> List[KeyRecord]:
        """Returns every record."""

    @abstractmethod
    async def create(self, record: KeyRecord) -> KeyRecord:
        """Inserts a new record."""

    @abstractmethod
    async def update(self, record: KeyRecord) -> None:
        """Writes back a single record."""

    @abstractmethod
    async def bulk_update(self, records: Iterable[KeyRecord]) -> None:
        """Writes back several records atomically."""

    @abstractmethod
    async def delete(self, key_id: str) -> bool:
        """Removes a record. Returns False if it did not exist."""

    async def bulk_delete(self, key_ids: Iterable[str]) -> int:
        """Removes several records. Returns how many existed."""
        count = 0
        for key_id in key_ids:
            if await self.delete(key_id):
                count += 1
        return count


def check_lookup_field(field: str) -> None:
    if field not in LOOKUP_FIELDS:
        raise InvalidArgumentError(
            f"Unsupported lookup field '{field}' (expected one of {LOOKUP_FIELDS})"
        )


class InMemoryCredentialStore(CredentialStore):
    """
    Dict-backed store.

    Used by tests and by embedders that do not need durability. Insertion
    order is preserved so rotation tie-breaks are stable.
    """

    def __init__(self, records: Optional[Iterable[KeyRecord]] = None):
        self._records: Dict[str, KeyRecord] = {}
        for record in records or []:
            self._records[record.id] = record.copy()

    async def find_active(self, query: KeyQuery) -> List[KeyRecord]:
        return [r.copy() for r in self._records.values() if query.matches(r)]

    async def find_by_field(self, field: str, value: str) -> Optional[KeyRecord]:
        check_lookup_field(field)
        for record in self._records.values():
            if getattr(record, field) == value:
                return record.copy()
        return None

    async def list_all(self) -> List[KeyRecord]:
        return [r.copy() for r in self._records.values()]

    async def create(self, record: KeyRecord) -> KeyRecord:
        if not record.secret:
            raise InvalidArgumentError("API key value cannot be empty")
        if record.id in self._records:
            raise InvalidArgumentError(f"Key id {record.id} already exists")
        self._records[record.id] = record.copy()
        return record.copy()

    async def update(self, record: KeyRecord) -> None:
        if record.id not in self._records:
            lib_logger.warning(f"Ignoring update for unknown key id {record.id}")
            return
        self._records[record.id] = record.copy()

    async def bulk_update(self, records: Iterable[KeyRecord]) -> None:
        staged = [r.copy() for r in records]
        # Validate the whole batch before writing anything
        missing = [r.id for r in staged if r.id not in self._records]
        if missing:
            raise InvalidArgumentError(f"Bulk update references unknown keys: {missing}")
        for record in staged:
            self._records[record.id] = record

    async def delete(self, key_id: str) -> bool:
        return self._records.pop(key_id, None) is not None
