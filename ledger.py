# Nyaya Vote Ledger: one ballot per (proposal, user), weighted tallies
#
# cast_vote runs as ONE store transaction:
#   1. INSERT the ballot (UNIQUE(proposal_id, user_id) rejects a second one)
#   2. Atomic tally increment: SET votes_x = votes_x + 1 in a single UPDATE,
#      guarded by status = 'active' so a proposal closed mid-flight is not
#      counted
#   3. Append the VOTE_CAST audit entry
# Any failure rolls back all three. The weight stored on the ballot is a
# snapshot; later reputation changes never touch it.

import logging
import time
import uuid
from enum import Enum
from typing import Optional

from audit import AuditAction, AuditLog
from db import Database, get_database, is_unique_violation
from errors import Conflict, InvalidChoice, InvalidState, NotFound, Unauthenticated
from reputation import effective_weight

log = logging.getLogger("nyaya")


class VoteChoice(str, Enum):
    FOR = "for"
    AGAINST = "against"


VALID_CHOICES = frozenset(c.value for c in VoteChoice)

# Single statement per side: the increment happens in the store, never as
# read-then-write in Python
_TALLY_SQL = {
    VoteChoice.FOR: (
        "UPDATE proposals SET votes_for = votes_for + 1, "
        "weighted_votes_for = weighted_votes_for + ? "
        "WHERE id = ? AND status = 'active'"
    ),
    VoteChoice.AGAINST: (
        "UPDATE proposals SET votes_against = votes_against + 1, "
        "weighted_votes_against = weighted_votes_against + ? "
        "WHERE id = ? AND status = 'active'"
    ),
}


class VoteLedger:
    """Records ballots and keeps proposal tallies consistent."""

    def __init__(self, db: Optional[Database] = None,
                 audit: Optional[AuditLog] = None):
        self.db = db or get_database()
        self.audit = audit or AuditLog(self.db)

    def cast_vote(self, proposal_id: str, user_id: Optional[str], choice: str) -> dict:
        """Cast a ballot.

        Checks, in order: identity, voter exists, proposal exists, proposal
        active, choice valid. Raises Unauthenticated, NotFound, InvalidState,
        InvalidChoice or Conflict (already voted).
        """
        if not user_id:
            raise Unauthenticated("Missing voter identity")

        with self.db.connection() as conn:
            user = self.db.fetch_one(
                conn, "SELECT id, reputation_score FROM users WHERE id = ?", (user_id,)
            )
            if not user:
                raise NotFound(f"User {user_id} not found")
            proposal = self.db.fetch_one(
                conn, "SELECT id, pool_id, title, status FROM proposals WHERE id = ?",
                (proposal_id,),
            )
        if not proposal:
            raise NotFound(f"Proposal {proposal_id} not found")
        if proposal["status"] != "active":
            raise InvalidState(
                f"Proposal {proposal_id} is {proposal['status']}, not active"
            )
        if not isinstance(choice, str) or choice not in VALID_CHOICES:
            raise InvalidChoice(
                f"Invalid choice {choice!r}; expected one of {sorted(VALID_CHOICES)}"
            )

        side = VoteChoice(choice)
        weight = effective_weight(user["reputation_score"])
        vote_id = uuid.uuid4().hex[:12]
        now = time.time()

        try:
            with self.db.transaction() as tx:
                self.db.execute(
                    tx,
                    """INSERT INTO votes (id, proposal_id, user_id, choice, weight, timestamp)
                       VALUES (?, ?, ?, ?, ?, ?)""",
                    (vote_id, proposal_id, user_id, side.value, weight, now),
                )
                updated = self.db.execute(tx, _TALLY_SQL[side], (weight, proposal_id))
                if updated.rowcount != 1:
                    raise InvalidState(f"Proposal {proposal_id} closed before the vote was counted")
                self.audit.record(
                    proposal["pool_id"], user_id, AuditAction.VOTE_CAST,
                    f"{side.value} on {proposal['title']}",
                    conn=tx,
                )
        except InvalidState:
            raise
        except Exception as e:
            if is_unique_violation(e):
                raise Conflict(
                    "You have already voted on this proposal", code="duplicate_vote"
                ) from e
            raise

        log.info("VOTE %s proposal=%s user=%s weight=%.4f",
                 side.value, proposal_id, user_id, weight)
        return {"success": True, "vote_id": vote_id, "choice": side.value, "weight": weight}

    def get_vote(self, proposal_id: str, user_id: str) -> Optional[dict]:
        with self.db.connection() as conn:
            return self.db.fetch_one(
                conn,
                "SELECT * FROM votes WHERE proposal_id = ? AND user_id = ?",
                (proposal_id, user_id),
            )

    def list_votes(self, proposal_id: str) -> list[dict]:
        """All ballots on a proposal, oldest first."""
        with self.db.connection() as conn:
            return self.db.fetch_all(
                conn,
                "SELECT * FROM votes WHERE proposal_id = ? ORDER BY timestamp ASC",
                (proposal_id,),
            )


# ── Singleton ─────────────────────────────────────────────────────────

_vote_ledger: Optional[VoteLedger] = None


def get_vote_ledger() -> VoteLedger:
    global _vote_ledger
    if _vote_ledger is None:
        _vote_ledger = VoteLedger()
    return _vote_ledger
