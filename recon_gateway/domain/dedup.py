"""Stable external identity keys and seen-key tracking"""

import hashlib
from typing import Set

from recon_gateway.domain.exceptions import DuplicateError
from recon_gateway.domain.gateway import LedgerGateway
from recon_gateway.domain.models import ExternalRecord, RecordKind


def external_key(source: str, external_id: str, kind: RecordKind) -> str:
    """
    SHA-256 identity of an external record.

    Pure function of (source, external_id, kind): field ordering or any other
    content of the raw payload never changes the key.
    """
    parts = f"{source.strip().lower()}|{kind.value}|{str(external_id).strip()}"
    return hashlib.sha256(parts.encode("utf-8")).hexdigest()


def record_key(source: str, record: ExternalRecord) -> str:
    return external_key(source, record.external_id, record.kind)


class Deduplicator:
    """
    Checks keys against the persisted dedup table, plus keys already
    encountered earlier in the same run (duplicates across pages).
    """

    def __init__(self, gateway: LedgerGateway, source: str):
        self.gateway = gateway
        self.source = source
        self._seen_in_run: Set[str] = set()

    def key_for(self, record: ExternalRecord) -> str:
        return record_key(self.source, record)

    def is_new(self, key: str) -> bool:
        if key in self._seen_in_run:
            return False
        self._seen_in_run.add(key)
        return not self.gateway.is_key_seen(key)

    def check(self, key: str) -> None:
        """
        Raises:
            DuplicateError: When the key was imported before or earlier in this run
        """
        if not self.is_new(key):
            raise DuplicateError(key)

    def mark_seen(self, key: str, run_id: str) -> None:
        """Persist the key; callers invoke this inside the item's atomic unit"""
        self.gateway.mark_key_seen(key, run_id)
