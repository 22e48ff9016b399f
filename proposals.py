# Nyaya Proposal Lifecycle
#
# Proposal lifecycle:   active → passed | rejected | closed   (all terminal)
#
# Closure paths:
#   - Manual: an admin moves an active proposal to any terminal state
#   - Sweep:  every active proposal with expires_at <= now is decided by
#             votes_for > votes_against (strict: a tie is rejected)
#
# Every status write is a conditional UPDATE ... WHERE status = 'active', so
# a proposal leaves `active` exactly once no matter how many closers race.
# That single successful write is the edge that triggers the creator's
# reputation recompute.

import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from audit import SYSTEM_ACTOR, AuditAction, AuditLog
from db import Database, get_database
from errors import InvalidInput, InvalidState, NotFound, PermissionDenied
from reputation import ReputationEngine

log = logging.getLogger("nyaya")


# ── Proposal States ───────────────────────────────────────────────────

class ProposalStatus(str, Enum):
    ACTIVE = "active"
    PASSED = "passed"
    REJECTED = "rejected"
    CLOSED = "closed"       # Administrative closure, no outcome


TERMINAL_STATES = frozenset({
    ProposalStatus.PASSED, ProposalStatus.REJECTED, ProposalStatus.CLOSED,
})

VALID_TRANSITIONS = {
    ProposalStatus.ACTIVE: {ProposalStatus.PASSED, ProposalStatus.REJECTED, ProposalStatus.CLOSED},
    ProposalStatus.PASSED: set(),
    ProposalStatus.REJECTED: set(),
    ProposalStatus.CLOSED: set(),
}

DEFAULT_VOTING_PERIOD_SEC = 7 * 86400
MAX_TITLE_LENGTH = 200


def decide_outcome(votes_for: int, votes_against: int) -> ProposalStatus:
    """Expiry decision on unweighted counts. Ties reject."""
    if votes_for > votes_against:
        return ProposalStatus.PASSED
    return ProposalStatus.REJECTED


@dataclass
class SweepResult:
    """Outcome of one expiry sweep. Failures are reported, never dropped."""
    ran_at: float = field(default_factory=time.time)
    closed: list = field(default_factory=list)     # [{"id", "status"}]
    failed: list = field(default_factory=list)     # [{"id", "error"}]

    @property
    def count(self) -> int:
        return len(self.closed)

    @property
    def ok(self) -> bool:
        return not self.failed

    def to_dict(self) -> dict:
        return {
            "ran_at": self.ran_at,
            "count": self.count,
            "ok": self.ok,
            "closed": self.closed,
            "failed": self.failed,
        }


class ProposalLifecycle:
    """Creates proposals and drives their status transitions."""

    def __init__(self, db: Optional[Database] = None,
                 audit: Optional[AuditLog] = None,
                 reputation: Optional[ReputationEngine] = None):
        self.db = db or get_database()
        self.audit = audit or AuditLog(self.db)
        self.reputation = reputation or ReputationEngine(self.db, self.audit)

    # ── Creation & reads ──────────────────────────────────────────────

    def create_proposal(self, pool_id: str, title: str, description: str,
                        creator_id: str, expires_at: Optional[float] = None) -> dict:
        title = (title or "").strip()
        if not title:
            raise InvalidInput("Proposal title is required")
        if len(title) > MAX_TITLE_LENGTH:
            raise InvalidInput(f"Proposal title exceeds {MAX_TITLE_LENGTH} characters")

        now = time.time()
        if expires_at is None:
            expires_at = now + DEFAULT_VOTING_PERIOD_SEC
        proposal = {
            "id": uuid.uuid4().hex[:12],
            "pool_id": pool_id,
            "title": title,
            "description": description or "",
            "creator_id": creator_id,
            "status": ProposalStatus.ACTIVE.value,
            "votes_for": 0,
            "votes_against": 0,
            "weighted_votes_for": 0.0,
            "weighted_votes_against": 0.0,
            "created_at": now,
            "expires_at": float(expires_at),
            "closed_at": None,
        }

        with self.db.transaction() as conn:
            if not self.db.fetch_one(conn, "SELECT id FROM pools WHERE id = ?", (pool_id,)):
                raise NotFound(f"Pool {pool_id} not found")
            creator = self.db.fetch_one(
                conn, "SELECT pool_id, role FROM users WHERE id = ?", (creator_id,)
            )
            if not creator:
                raise NotFound(f"User {creator_id} not found")
            if creator["pool_id"] != pool_id and creator["role"] != "superadmin":
                raise PermissionDenied(f"User {creator_id} is not a member of pool {pool_id}")
            self.db.execute(
                conn,
                """INSERT INTO proposals
                   (id, pool_id, title, description, creator_id, status,
                    created_at, expires_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    proposal["id"], pool_id, title, proposal["description"],
                    creator_id, proposal["status"], now, proposal["expires_at"],
                ),
            )
            self.audit.record(
                pool_id, creator_id, AuditAction.PROPOSAL_CREATED,
                f"New proposal created: {title}", conn=conn,
            )

        log.info("PROPOSAL CREATED %s pool=%s expires=%.0f",
                 proposal["id"], pool_id, proposal["expires_at"])
        return proposal

    def get_proposal(self, proposal_id: str) -> dict:
        with self.db.connection() as conn:
            row = self.db.fetch_one(conn, "SELECT * FROM proposals WHERE id = ?", (proposal_id,))
        if not row:
            raise NotFound(f"Proposal {proposal_id} not found")
        return row

    def list_proposals(self, pool_id: str, status: Optional[str] = None) -> list[dict]:
        sql = "SELECT * FROM proposals WHERE pool_id = ?"
        params = [pool_id]
        if status:
            sql += " AND status = ?"
            params.append(status)
        sql += " ORDER BY created_at DESC"
        with self.db.connection() as conn:
            return self.db.fetch_all(conn, sql, params)

    # ── Transitions ───────────────────────────────────────────────────

    def transition(self, proposal_id: str, new_status: str, actor_id: str) -> dict:
        """Manually move an active proposal to a terminal state.

        Raises InvalidInput for an unknown or non-terminal target,
        NotFound for an unknown proposal, InvalidState if it already left
        `active`.
        """
        try:
            target = ProposalStatus(new_status)
        except ValueError:
            raise InvalidInput(f"Unknown proposal status: {new_status!r}")

        if target not in VALID_TRANSITIONS[ProposalStatus.ACTIVE]:
            raise InvalidInput(f"Cannot transition a proposal to {target.value}")

        with self.db.transaction() as conn:
            proposal = self._close_if_active(conn, proposal_id, target)
            self.audit.record(
                proposal["pool_id"], actor_id, AuditAction.PROPOSAL_STATUS_CHANGED,
                f"Proposal {proposal['title']} moved active -> {target.value}",
                conn=conn,
            )

        log.info("STATE active → %s | proposal=%s | actor=%s",
                 target.value, proposal_id, actor_id)
        try:
            self.resolve_transition(proposal, ProposalStatus.ACTIVE.value, target.value)
        except Exception as e:
            log.error("STATE reputation recompute failed proposal=%s: %s", proposal_id, e)
        return proposal

    def _close_if_active(self, conn, proposal_id: str, target: ProposalStatus) -> dict:
        """Conditional status write. Returns the updated row."""
        closed_at = time.time()
        result = self.db.execute(
            conn,
            "UPDATE proposals SET status = ?, closed_at = ? WHERE id = ? AND status = 'active'",
            (target.value, closed_at, proposal_id),
        )
        proposal = self.db.fetch_one(conn, "SELECT * FROM proposals WHERE id = ?", (proposal_id,))
        if not proposal:
            raise NotFound(f"Proposal {proposal_id} not found")
        if result.rowcount != 1:
            raise InvalidState(
                f"Proposal {proposal_id} is already {proposal['status']}"
            )
        return proposal

    def resolve_transition(self, proposal: dict, old_status: str,
                           new_status: str) -> Optional[float]:
        """Edge trigger: recompute the creator's reputation on the first
        departure from `active`. Any other pair is ignored."""
        old_status = getattr(old_status, "value", old_status)
        new_status = getattr(new_status, "value", new_status)
        if old_status != ProposalStatus.ACTIVE.value or new_status == ProposalStatus.ACTIVE.value:
            return None
        return self.reputation.recompute_on_transition(
            proposal["creator_id"], pool_id=proposal.get("pool_id"),
        )

    # ── Expiry sweep ──────────────────────────────────────────────────

    def sweep_expired(self, now: Optional[float] = None) -> SweepResult:
        """Close every active proposal whose expiry has passed.

        The candidate set is queried fresh on each call. Each proposal closes
        in its own transaction; a failure is logged and returned in
        `result.failed` while the rest proceed. Re-running finds nothing
        left to close.
        """
        now = time.time() if now is None else now
        result = SweepResult(ran_at=now)

        with self.db.connection() as conn:
            candidates = self.db.fetch_all(
                conn,
                """SELECT id FROM proposals
                   WHERE status = 'active' AND expires_at <= ?
                   ORDER BY expires_at ASC""",
                (now,),
            )

        for row in candidates:
            proposal_id = row["id"]
            try:
                proposal = self._auto_close(proposal_id)
            except InvalidState:
                # Closed by someone else between the scan and the write
                continue
            except Exception as e:
                log.error("SWEEP FAILED proposal=%s: %s", proposal_id, e)
                result.failed.append({"id": proposal_id, "error": str(e)})
                continue

            result.closed.append({"id": proposal_id, "status": proposal["status"]})
            try:
                self.resolve_transition(proposal, ProposalStatus.ACTIVE.value, proposal["status"])
            except Exception as e:
                log.error("SWEEP reputation recompute failed proposal=%s: %s", proposal_id, e)
                result.failed.append({"id": proposal_id, "error": f"reputation: {e}"})

        if result.closed or result.failed:
            log.info("SWEEP closed=%d failed=%d", result.count, len(result.failed))
        return result

    def _auto_close(self, proposal_id: str) -> dict:
        sql = "SELECT votes_for, votes_against FROM proposals WHERE id = ?"
        if self.db.is_postgres:
            # Hold the row so no ballot lands between the read and the close
            sql += " FOR UPDATE"
        with self.db.transaction() as conn:
            current = self.db.fetch_one(conn, sql, (proposal_id,))
            if not current:
                raise NotFound(f"Proposal {proposal_id} not found")
            outcome = decide_outcome(int(current["votes_for"]), int(current["votes_against"]))
            proposal = self._close_if_active(conn, proposal_id, outcome)
            self.audit.record(
                proposal["pool_id"], SYSTEM_ACTOR, AuditAction.PROPOSAL_AUTO_CLOSED,
                f"Proposal {proposal['title']} expired: {outcome.value} "
                f"({proposal['votes_for']} for / {proposal['votes_against']} against)",
                conn=conn,
            )
        return proposal


# ── Singleton ─────────────────────────────────────────────────────────

_lifecycle: Optional[ProposalLifecycle] = None


def get_proposal_lifecycle() -> ProposalLifecycle:
    global _lifecycle
    if _lifecycle is None:
        _lifecycle = ProposalLifecycle()
    return _lifecycle
