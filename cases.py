# Nyaya Case Tracking
# Legal cases a pool funds from its treasury.
#
# Stage progression:  filing → discovery → trial → judgment → appeal
# Case status:        ongoing → resolved | dismissed
#
# Recorded costs debit the pool treasury in the same transaction that
# raises actual_cost; a treasury that cannot cover the cost rejects it.

import logging
import time
import uuid
from enum import Enum
from typing import Optional

from audit import AuditAction, AuditLog
from db import Database, get_database
from errors import InvalidInput, InvalidState, NotFound

log = logging.getLogger("nyaya")


class CaseStage(str, Enum):
    FILING = "filing"
    DISCOVERY = "discovery"
    TRIAL = "trial"
    JUDGMENT = "judgment"
    APPEAL = "appeal"


STAGE_ORDER = [
    CaseStage.FILING, CaseStage.DISCOVERY, CaseStage.TRIAL,
    CaseStage.JUDGMENT, CaseStage.APPEAL,
]


class CaseStatus(str, Enum):
    ONGOING = "ongoing"
    RESOLVED = "resolved"
    DISMISSED = "dismissed"


def next_stage(stage: str) -> Optional[CaseStage]:
    idx = STAGE_ORDER.index(CaseStage(stage))
    if idx + 1 >= len(STAGE_ORDER):
        return None
    return STAGE_ORDER[idx + 1]


class CaseTracker:

    def __init__(self, db: Optional[Database] = None,
                 audit: Optional[AuditLog] = None):
        self.db = db or get_database()
        self.audit = audit or AuditLog(self.db)

    def open_case(self, pool_id: str, title: str, description: str = "",
                  estimated_cost: float = 0.0, actor_id: str = "system") -> dict:
        title = (title or "").strip()
        if not title:
            raise InvalidInput("Case title is required")
        if estimated_cost < 0:
            raise InvalidInput("Estimated cost cannot be negative")

        case = {
            "id": uuid.uuid4().hex[:12],
            "pool_id": pool_id,
            "title": title,
            "description": description or "",
            "stage": CaseStage.FILING.value,
            "estimated_cost": float(estimated_cost),
            "actual_cost": 0.0,
            "status": CaseStatus.ONGOING.value,
            "created_at": time.time(),
        }
        with self.db.transaction() as conn:
            if not self.db.fetch_one(conn, "SELECT id FROM pools WHERE id = ?", (pool_id,)):
                raise NotFound(f"Pool {pool_id} not found")
            self.db.execute(
                conn,
                """INSERT INTO cases
                   (id, pool_id, title, description, stage, estimated_cost,
                    actual_cost, status, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    case["id"], pool_id, title, case["description"], case["stage"],
                    case["estimated_cost"], 0.0, case["status"], case["created_at"],
                ),
            )
            self.audit.record(
                pool_id, actor_id, AuditAction.CASE_OPENED,
                f"Case opened: {title} (est. {case['estimated_cost']:.2f})", conn=conn,
            )
        return case

    def get_case(self, case_id: str) -> dict:
        with self.db.connection() as conn:
            case = self.db.fetch_one(conn, "SELECT * FROM cases WHERE id = ?", (case_id,))
        if not case:
            raise NotFound(f"Case {case_id} not found")
        return case

    def list_cases(self, pool_id: str) -> list[dict]:
        with self.db.connection() as conn:
            return self.db.fetch_all(
                conn, "SELECT * FROM cases WHERE pool_id = ? ORDER BY created_at ASC", (pool_id,)
            )

    def _load_ongoing(self, conn, case_id: str) -> dict:
        case = self.db.fetch_one(conn, "SELECT * FROM cases WHERE id = ?", (case_id,))
        if not case:
            raise NotFound(f"Case {case_id} not found")
        if case["status"] != CaseStatus.ONGOING.value:
            raise InvalidState(f"Case {case_id} is {case['status']}")
        return case

    def advance_stage(self, case_id: str, actor_id: str = "system") -> dict:
        with self.db.transaction() as conn:
            case = self._load_ongoing(conn, case_id)
            target = next_stage(case["stage"])
            if target is None:
                raise InvalidState(f"Case {case_id} is already at the final stage")
            self.db.execute(
                conn,
                "UPDATE cases SET stage = ? WHERE id = ? AND stage = ?",
                (target.value, case_id, case["stage"]),
            )
            self.audit.record(
                case["pool_id"], actor_id, AuditAction.CASE_STAGE_ADVANCED,
                f"Case {case['title']}: {case['stage']} -> {target.value}", conn=conn,
            )
        return self.get_case(case_id)

    def record_cost(self, case_id: str, amount: float, actor_id: str = "system") -> dict:
        if amount is None or amount <= 0:
            raise InvalidInput("Cost amount must be positive")
        with self.db.transaction() as conn:
            case = self._load_ongoing(conn, case_id)
            debited = self.db.execute(
                conn,
                """UPDATE pools SET treasury_balance = treasury_balance - ?
                   WHERE id = ? AND treasury_balance >= ?""",
                (float(amount), case["pool_id"], float(amount)),
            )
            if debited.rowcount != 1:
                raise InvalidState("Insufficient treasury balance for this cost")
            self.db.execute(
                conn,
                "UPDATE cases SET actual_cost = actual_cost + ? WHERE id = ?",
                (float(amount), case_id),
            )
            self.audit.record(
                case["pool_id"], actor_id, AuditAction.CASE_COST_RECORDED,
                f"Case {case['title']}: cost {amount:.2f} paid from treasury", conn=conn,
            )
        log.info("CASE COST %s %.2f", case_id, amount)
        return self.get_case(case_id)

    def close_case(self, case_id: str, outcome: str, actor_id: str = "system") -> dict:
        try:
            status = CaseStatus(outcome)
        except ValueError:
            raise InvalidInput(f"Unknown case outcome: {outcome!r}")
        if status == CaseStatus.ONGOING:
            raise InvalidInput("A case cannot be closed as ongoing")

        with self.db.transaction() as conn:
            case = self._load_ongoing(conn, case_id)
            self.db.execute(
                conn, "UPDATE cases SET status = ? WHERE id = ?", (status.value, case_id)
            )
            self.audit.record(
                case["pool_id"], actor_id, AuditAction.CASE_CLOSED,
                f"Case {case['title']} {status.value}", conn=conn,
            )
        return self.get_case(case_id)


_case_tracker: Optional[CaseTracker] = None


def get_case_tracker() -> CaseTracker:
    global _case_tracker
    if _case_tracker is None:
        _case_tracker = CaseTracker()
    return _case_tracker
