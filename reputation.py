# Nyaya Reputation Engine: governance weight from participation metrics
#
# Score Components (each conventionally 0.0–1.0, never clamped here):
#   Contribution:          40%
#   Voting participation:  30%
#   Proposal accuracy:     30%
#
# Recompute triggers:
#   1. A proposal leaves `active` for the first time → its creator only
#   2. An explicit recompute request for a user
#
# The result overwrites users.reputation_score. No weight history is kept:
# ballots snapshot the weight at vote time, so a recompute never changes a
# tally that has already been counted.

import logging
from typing import Optional

from audit import SYSTEM_ACTOR, AuditAction, AuditLog
from db import Database, get_database
from errors import NotFound

log = logging.getLogger("nyaya")


# ── Formula ───────────────────────────────────────────────────────────

REPUTATION_WEIGHTS = {
    "contribution_score": 0.4,
    "voting_participation": 0.3,
    "proposal_accuracy": 0.3,
}

# A ballot from someone with no computed reputation still counts as one
DEFAULT_VOTE_WEIGHT = 1.0


def compute_weight(contribution_score: float, voting_participation: float,
                   proposal_accuracy: float) -> float:
    """Pure weighted sum of the three participation metrics."""
    return (
        contribution_score * REPUTATION_WEIGHTS["contribution_score"]
        + voting_participation * REPUTATION_WEIGHTS["voting_participation"]
        + proposal_accuracy * REPUTATION_WEIGHTS["proposal_accuracy"]
    )


def effective_weight(reputation_score: Optional[float]) -> float:
    """Weight applied to a ballot.

    Unset and zero are treated alike: both fall back to DEFAULT_VOTE_WEIGHT.
    """
    if reputation_score:
        return float(reputation_score)
    return DEFAULT_VOTE_WEIGHT


# ── Reputation Engine ─────────────────────────────────────────────────

class ReputationEngine:
    """Computes and persists governance weights."""

    def __init__(self, db: Optional[Database] = None,
                 audit: Optional[AuditLog] = None):
        self.db = db or get_database()
        self.audit = audit or AuditLog(self.db)

    def recompute(self, user_id: str) -> dict:
        """Explicit recompute. Raises NotFound for an unknown user."""
        new_score = self._recompute(user_id, actor=user_id)
        if new_score is None:
            raise NotFound(f"User {user_id} not found")
        return {"user_id": user_id, "new_score": new_score}

    def recompute_on_transition(self, creator_id: str,
                                pool_id: Optional[str] = None) -> Optional[float]:
        """Best-effort recompute after a proposal closes.

        A missing creator is not an error here; returns None.
        """
        new_score = self._recompute(creator_id, actor=SYSTEM_ACTOR, pool_id=pool_id)
        if new_score is None:
            log.debug("REPUTATION skip: creator %s no longer exists", creator_id)
        return new_score

    def _recompute(self, user_id: str, actor: str,
                   pool_id: Optional[str] = None) -> Optional[float]:
        with self.db.transaction() as conn:
            user = self.db.fetch_one(
                conn,
                """SELECT id, pool_id, contribution_score, voting_participation,
                          proposal_accuracy
                   FROM users WHERE id = ?""",
                (user_id,),
            )
            if not user:
                return None

            new_score = compute_weight(
                float(user["contribution_score"] or 0),
                float(user["voting_participation"] or 0),
                float(user["proposal_accuracy"] or 0),
            )
            self.db.execute(
                conn,
                "UPDATE users SET reputation_score = ? WHERE id = ?",
                (new_score, user_id),
            )
            self.audit.record(
                pool_id or user["pool_id"], actor, AuditAction.REPUTATION_UPDATE,
                f"Updated reputation for {user_id} to {new_score:.4f}",
                conn=conn,
            )

        log.info("REPUTATION %s recomputed -> %.4f", user_id, new_score)
        return new_score

    def get_weight(self, user_id: str) -> float:
        """Effective ballot weight for a user right now."""
        with self.db.connection() as conn:
            user = self.db.fetch_one(
                conn, "SELECT reputation_score FROM users WHERE id = ?", (user_id,)
            )
        if not user:
            raise NotFound(f"User {user_id} not found")
        return effective_weight(user["reputation_score"])


# ── Singleton ─────────────────────────────────────────────────────────

_reputation_engine: Optional[ReputationEngine] = None


def get_reputation_engine() -> ReputationEngine:
    global _reputation_engine
    if _reputation_engine is None:
        _reputation_engine = ReputationEngine()
    return _reputation_engine
