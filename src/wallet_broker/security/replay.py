"""Replay prevention ledger.

Every payload the broker is about to broadcast is fingerprinted (SHA-256 over
the method and canonical JSON of its normalized params) and recorded as
``pending`` *before* the network call, so two racing submissions of the same
signed transaction cannot both reach the network. A successful broadcast
moves the record to ``broadcasted``, which is permanent. Pending records left
behind by a crash are evicted after a grace period.

Mutations update memory synchronously; :meth:`ReplayLedger.flush` writes them
to SQLite.
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Callable

from wallet_broker.storage.database import Database
from wallet_broker.storage.models import ReplayRecord, ReplayStatus

logger = logging.getLogger("wallet_broker.replay")

_HEX_RE = re.compile(r"^(0x)?[0-9a-fA-F]+$")


@dataclass(frozen=True)
class ReplayCheck:
    is_replay: bool
    reason: str | None = None
    fingerprint: str = ""


def _normalize(value: Any) -> Any:
    """Canonical form of a param: hex strings lower-cased without ``0x``."""
    if isinstance(value, str):
        stripped = value.strip()
        if len(stripped) > 2 and _HEX_RE.match(stripped):
            return stripped.lower().removeprefix("0x")
        return stripped
    if isinstance(value, dict):
        return {str(k): _normalize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_normalize(v) for v in value]
    return value


def fingerprint(method: str, params: Any) -> str:
    """Deterministic digest of *method* plus normalized *params*."""
    canonical = json.dumps(
        [method, _normalize(params)],
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class ReplayLedger:
    """Owner of the ``replay_ledger`` table."""

    def __init__(
        self,
        db: Database | None = None,
        window_seconds: float = 300.0,
        stale_pending_seconds: float = 600.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.db = db
        self.window_seconds = window_seconds
        self.stale_pending_seconds = stale_pending_seconds
        self._clock = clock
        self._records: dict[str, ReplayRecord] = {}
        self._dirty: set[str] = set()
        self._deleted: set[str] = set()
        self._replays_blocked = 0

    fingerprint = staticmethod(fingerprint)

    def get(self, fp: str) -> ReplayRecord | None:
        return self._records.get(fp)

    def __len__(self) -> int:
        return len(self._records)

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    def check_replay_attempt(self, origin: str, method: str, params: Any) -> ReplayCheck:
        fp = fingerprint(method, params)
        record = self._records.get(fp)
        if record is None:
            return ReplayCheck(is_replay=False, fingerprint=fp)

        if record.status == ReplayStatus.BROADCASTED:
            self._replays_blocked += 1
            return ReplayCheck(
                is_replay=True,
                reason="Transaction has already been broadcast",
                fingerprint=fp,
            )

        age = self._clock() - record.first_seen_at
        if age >= self.stale_pending_seconds:
            self._drop(fp)
            return ReplayCheck(is_replay=False, fingerprint=fp)

        if record.origin == origin and age < self.window_seconds:
            self._replays_blocked += 1
            return ReplayCheck(
                is_replay=True,
                reason="Identical request is already being processed",
                fingerprint=fp,
            )
        return ReplayCheck(is_replay=False, fingerprint=fp)

    def is_broadcasted(self, fp: str) -> bool:
        record = self._records.get(fp)
        return record is not None and record.status == ReplayStatus.BROADCASTED

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def record_transaction(
        self,
        fp: str,
        origin: str,
        method: str,
        params: Any = None,
        status: ReplayStatus | str = ReplayStatus.PENDING,
    ) -> ReplayRecord:
        """Record *fp* before submission. A broadcast record is never downgraded."""
        existing = self._records.get(fp)
        if existing is not None and existing.status == ReplayStatus.BROADCASTED:
            return existing
        record = ReplayRecord(
            fingerprint=fp,
            origin=origin,
            method=method,
            status=ReplayStatus(status),
            first_seen_at=self._clock(),
        )
        self._records[fp] = record
        self._touch(fp)
        return record

    def mark_transaction_broadcasted(self, fp: str, txid: str | None = None) -> bool:
        record = self._records.get(fp)
        if record is None:
            return False
        record.status = ReplayStatus.BROADCASTED
        if txid:
            record.txid = txid
        self._touch(fp)
        logger.debug(f"Fingerprint {fp[:12]} marked broadcasted (txid={txid})")
        return True

    def discard_pending(self, fp: str) -> bool:
        """Forget a pending record after a failed broadcast so the payload can be retried."""
        record = self._records.get(fp)
        if record is None or record.status != ReplayStatus.PENDING:
            return False
        self._drop(fp)
        return True

    def evict_stale(self, now: float | None = None) -> int:
        """Drop pending records older than the grace period. Broadcast records stay."""
        now = self._clock() if now is None else now
        stale = [
            fp
            for fp, rec in self._records.items()
            if rec.status == ReplayStatus.PENDING
            and now - rec.first_seen_at >= self.stale_pending_seconds
        ]
        for fp in stale:
            self._drop(fp)
        if stale:
            logger.info(f"Evicted {len(stale)} stale pending replay record(s)")
        return len(stale)

    def clear(self) -> None:
        self._deleted.update(self._records)
        self._records.clear()
        self._dirty.clear()

    def _touch(self, fp: str) -> None:
        self._dirty.add(fp)
        self._deleted.discard(fp)

    def _drop(self, fp: str) -> None:
        self._records.pop(fp, None)
        self._dirty.discard(fp)
        self._deleted.add(fp)

    def get_stats(self) -> dict:
        records = list(self._records.values())
        return {
            "total": len(records),
            "pending": sum(1 for r in records if r.status == ReplayStatus.PENDING),
            "broadcasted": sum(1 for r in records if r.status == ReplayStatus.BROADCASTED),
            "replays_blocked": self._replays_blocked,
        }

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def load(self) -> int:
        """Populate memory from the database. Returns the number of records."""
        if self.db is None:
            return 0
        rows = await self.db.fetch_all("SELECT * FROM replay_ledger")
        for row in rows:
            record = ReplayRecord(
                fingerprint=row["fingerprint"],
                origin=row["origin"],
                method=row["method"],
                status=ReplayStatus(row["status"]),
                txid=row["txid"],
                first_seen_at=row["first_seen_at"],
            )
            self._records[record.fingerprint] = record
        return len(rows)

    async def flush(self) -> None:
        """Write pending mutations to the database."""
        if self.db is None:
            self._dirty.clear()
            self._deleted.clear()
            return
        dirty, deleted = self._dirty, self._deleted
        self._dirty, self._deleted = set(), set()
        upserts = [
            (r.fingerprint, r.origin, r.method, r.status.value, r.txid, r.first_seen_at)
            for r in (self._records[fp] for fp in dirty if fp in self._records)
        ]
        if upserts:
            await self.db.execute_many(
                "INSERT OR REPLACE INTO replay_ledger "
                "(fingerprint, origin, method, status, txid, first_seen_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                upserts,
            )
        if deleted:
            await self.db.execute_many(
                "DELETE FROM replay_ledger WHERE fingerprint = ?",
                [(fp,) for fp in deleted],
            )
