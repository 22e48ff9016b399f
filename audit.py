# Nyaya Audit Trail
# Append-only record of every state-changing action in a pool.
#
# Entry: {pool_id, user_id (actor), action, details, timestamp}
#
# TAMPER-EVIDENT: each entry carries the SHA-256 hash of the previous entry
# (prev_hash) and its own hash (entry_hash), forming a chain ordered by a
# monotonically increasing seq. Replaying the chain detects edits/deletes.
#
# Callers that mutate state pass their open transaction as `conn` so the
# audit row commits (or rolls back) together with the effect it describes.

import hashlib
import json
import logging
import time
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Optional

from db import Database, get_database

log = logging.getLogger("nyaya.audit")

# Advisory lock key serializing chain appends on Postgres
AUDIT_CHAIN_LOCK_ID = 7_310_001

SYSTEM_ACTOR = "system"


class AuditAction(str, Enum):
    POOL_CREATED = "POOL_CREATED"
    USER_JOINED_POOL = "USER_JOINED_POOL"
    TREASURY_DEPOSIT = "TREASURY_DEPOSIT"

    PROPOSAL_CREATED = "PROPOSAL_CREATED"
    PROPOSAL_STATUS_CHANGED = "PROPOSAL_STATUS_CHANGED"
    PROPOSAL_AUTO_CLOSED = "PROPOSAL_AUTO_CLOSED"
    VOTE_CAST = "VOTE_CAST"

    REPUTATION_UPDATE = "REPUTATION_UPDATE"
    SUBSCRIPTION_UPDATED = "SUBSCRIPTION_UPDATED"

    CASE_OPENED = "CASE_OPENED"
    CASE_STAGE_ADVANCED = "CASE_STAGE_ADVANCED"
    CASE_COST_RECORDED = "CASE_COST_RECORDED"
    CASE_CLOSED = "CASE_CLOSED"


@dataclass
class AuditEntry:
    """Immutable audit record."""
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    pool_id: Optional[str] = None
    user_id: str = ""
    action: str = ""
    details: str = ""
    timestamp: float = field(default_factory=time.time)
    seq: int = 0
    prev_hash: str = ""
    entry_hash: str = ""

    def compute_hash(self) -> str:
        """SHA-256 over the canonical entry (excludes entry_hash)."""
        canonical = json.dumps({
            "id": self.id,
            "pool_id": self.pool_id,
            "user_id": self.user_id,
            "action": self.action,
            "details": self.details,
            "timestamp": self.timestamp,
            "seq": self.seq,
            "prev_hash": self.prev_hash,
        }, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_row(cls, row: dict) -> "AuditEntry":
        return cls(
            id=row["id"],
            pool_id=row["pool_id"],
            user_id=row["user_id"],
            action=row["action"],
            details=row["details"] or "",
            timestamp=row["timestamp"],
            seq=row["seq"],
            prev_hash=row["prev_hash"] or "",
            entry_hash=row["entry_hash"] or "",
        )


class AuditLog:
    """Append-only audit store."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def record(self, pool_id: Optional[str], user_id: str, action,
               details: str = "", conn=None) -> AuditEntry:
        """Append an entry, inside `conn`'s transaction when one is given."""
        entry = AuditEntry(
            pool_id=pool_id,
            user_id=str(user_id),
            action=getattr(action, "value", action),
            details=details,
        )
        if conn is not None:
            return self._append(conn, entry)
        with self.db.transaction() as tx:
            return self._append(tx, entry)

    def _append(self, conn, entry: AuditEntry) -> AuditEntry:
        if self.db.is_postgres:
            self.db.execute(conn, "SELECT pg_advisory_xact_lock(?)", (AUDIT_CHAIN_LOCK_ID,))

        head = self.db.fetch_one(
            conn, "SELECT seq, entry_hash FROM audit_logs ORDER BY seq DESC LIMIT 1"
        )
        entry.seq = (head["seq"] + 1) if head else 1
        entry.prev_hash = head["entry_hash"] if head else ""
        entry.entry_hash = entry.compute_hash()

        self.db.execute(
            conn,
            """INSERT INTO audit_logs
               (id, seq, pool_id, user_id, action, details, timestamp,
                prev_hash, entry_hash)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                entry.id, entry.seq, entry.pool_id, entry.user_id,
                entry.action, entry.details, entry.timestamp,
                entry.prev_hash, entry.entry_hash,
            ),
        )
        log.info("AUDIT %s pool=%s actor=%s | %s",
                 entry.action, entry.pool_id, entry.user_id, entry.details)
        return entry

    def query(
        self,
        pool_id: Optional[str] = None,
        user_id: Optional[str] = None,
        action: Optional[str] = None,
        start: Optional[float] = None,
        end: Optional[float] = None,
        limit: int = 500,
    ) -> list[AuditEntry]:
        """Filtered audit entries, newest first."""
        clauses = []
        params = []
        if pool_id:
            clauses.append("pool_id = ?")
            params.append(pool_id)
        if user_id:
            clauses.append("user_id = ?")
            params.append(user_id)
        if action:
            clauses.append("action = ?")
            params.append(getattr(action, "value", action))
        if start is not None:
            clauses.append("timestamp >= ?")
            params.append(start)
        if end is not None:
            clauses.append("timestamp <= ?")
            params.append(end)

        where = " AND ".join(clauses) if clauses else "1=1"
        params.append(limit)

        with self.db.connection() as conn:
            rows = self.db.fetch_all(
                conn,
                f"SELECT * FROM audit_logs WHERE {where} "
                "ORDER BY timestamp DESC, seq DESC LIMIT ?",
                params,
            )
        return [AuditEntry.from_row(r) for r in rows]

    def verify_chain(self) -> dict:
        """Replay the hash chain.

        Returns {"valid": bool, "entries_checked": int, "broken_at": id or None}.
        """
        with self.db.connection() as conn:
            rows = self.db.fetch_all(conn, "SELECT * FROM audit_logs ORDER BY seq ASC")

        prev_hash = ""
        for i, row in enumerate(rows):
            entry = AuditEntry.from_row(row)
            if entry.prev_hash != prev_hash:
                return {
                    "valid": False,
                    "entries_checked": i + 1,
                    "broken_at": entry.id,
                    "reason": f"prev_hash mismatch at entry {entry.id}",
                }
            if entry.compute_hash() != entry.entry_hash:
                return {
                    "valid": False,
                    "entries_checked": i + 1,
                    "broken_at": entry.id,
                    "reason": f"entry_hash tampered at entry {entry.id}",
                }
            prev_hash = entry.entry_hash

        return {"valid": True, "entries_checked": len(rows), "broken_at": None}


# ── Singleton ─────────────────────────────────────────────────────────

_audit_log: Optional[AuditLog] = None


def get_audit_log() -> AuditLog:
    global _audit_log
    if _audit_log is None:
        _audit_log = AuditLog()
    return _audit_log
