"""Short-lived handoff records for sign and compose requests.

The orchestrator parks a request's parameters here under a fresh id and the
approval UI fetches them by that id. Memory is the primary copy; SQLite keeps
a backup so a UI reload can still find the record. Records are removed once
the request settles and pruned by age otherwise.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any

from wallet_broker.storage.database import Database
from wallet_broker.storage.models import HandoffRecord, new_request_id

logger = logging.getLogger("wallet_broker.storage.handoff")


class HandoffStore:
    """Owner of the ``request_handoff`` table."""

    def __init__(self, db: Database | None = None, max_age_seconds: float = 600.0) -> None:
        self.db = db
        self.max_age_seconds = max_age_seconds
        self._records: dict[str, HandoffRecord] = {}

    def __len__(self) -> int:
        return len(self._records)

    async def store(
        self,
        kind: str,
        origin: str,
        payload: dict[str, Any],
        request_id: str | None = None,
    ) -> HandoffRecord:
        """Park *payload* and return the record (its ``id`` is the handoff key)."""
        record = HandoffRecord(
            id=request_id or new_request_id(kind),
            kind=kind,
            origin=origin,
            payload=payload,
        )
        self._records[record.id] = record
        if self.db is not None:
            await self.db.execute(
                "INSERT OR REPLACE INTO request_handoff "
                "(id, kind, origin, payload_json, created_at) VALUES (?, ?, ?, ?, ?)",
                (
                    record.id,
                    record.kind,
                    record.origin,
                    json.dumps(record.payload, default=str),
                    record.created_at,
                ),
            )
        logger.debug(f"Stored {kind} handoff {record.id} for {origin}")
        return record

    async def get(self, request_id: str) -> HandoffRecord | None:
        """Return the record from memory, falling back to the database."""
        record = self._records.get(request_id)
        if record is not None or self.db is None:
            return record
        row = await self.db.fetch_one(
            "SELECT * FROM request_handoff WHERE id = ?", (request_id,)
        )
        if row is None:
            return None
        record = HandoffRecord(
            id=row["id"],
            kind=row["kind"],
            origin=row["origin"],
            payload=json.loads(row["payload_json"] or "{}"),
            created_at=row["created_at"],
        )
        self._records[record.id] = record
        return record

    def discard(self, request_id: str) -> bool:
        """Drop the in-memory copy. Used from synchronous cleanup paths."""
        return self._records.pop(request_id, None) is not None

    async def remove(self, request_id: str) -> bool:
        removed = self.discard(request_id)
        if self.db is not None:
            cursor = await self.db.execute(
                "DELETE FROM request_handoff WHERE id = ?", (request_id,)
            )
            removed = removed or cursor.rowcount > 0
        return removed

    async def prune(self, now: float | None = None) -> int:
        """Delete records older than ``max_age_seconds``. Returns how many went."""
        now = time.time() if now is None else now
        cutoff = now - self.max_age_seconds
        stale = [rid for rid, rec in self._records.items() if rec.created_at < cutoff]
        for rid in stale:
            del self._records[rid]
        if self.db is not None:
            cursor = await self.db.execute(
                "DELETE FROM request_handoff WHERE created_at < ?", (cutoff,)
            )
            pruned = max(len(stale), cursor.rowcount)
        else:
            pruned = len(stale)
        if pruned:
            logger.info(f"Pruned {pruned} stale handoff record(s)")
        return pruned

    async def clear(self) -> None:
        self._records.clear()
        if self.db is not None:
            await self.db.execute("DELETE FROM request_handoff")
