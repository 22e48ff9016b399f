# Nyaya Pools & Members
# Communities ("pools") own a treasury and a set of members. Users carry a
# role (superadmin/admin/member) and the three participation metrics the
# reputation engine reads. Identity is a plain user id; there are no
# sessions or passwords here.

import logging
import time
import uuid
from enum import Enum
from typing import Optional

from audit import AuditAction, AuditLog
from billing import SubscriptionTier
from db import Database, get_database, is_unique_violation
from errors import Conflict, InvalidInput, NotFound, PermissionDenied

log = logging.getLogger("nyaya")


class UserRole(str, Enum):
    SUPERADMIN = "superadmin"
    ADMIN = "admin"
    MEMBER = "member"


ADMIN_ROLES = frozenset({UserRole.SUPERADMIN.value, UserRole.ADMIN.value})

METRIC_FIELDS = ("contribution_score", "voting_participation", "proposal_accuracy")


def _new_id() -> str:
    return uuid.uuid4().hex[:12]


class PoolDirectory:
    """Users, pools, membership and treasury deposits."""

    def __init__(self, db: Optional[Database] = None,
                 audit: Optional[AuditLog] = None):
        self.db = db or get_database()
        self.audit = audit or AuditLog(self.db)

    # ── Users ─────────────────────────────────────────────────────────

    def register_user(self, email: str, display_name: str = "",
                      role: str = UserRole.MEMBER.value, **metrics) -> dict:
        email = (email or "").strip().lower()
        if not email or "@" not in email:
            raise InvalidInput(f"Invalid email: {email!r}")
        try:
            role = UserRole(role).value
        except ValueError:
            raise InvalidInput(f"Unknown role: {role!r}")

        user = {
            "id": _new_id(),
            "email": email,
            "display_name": display_name or email.split("@")[0],
            "role": role,
            "pool_id": None,
            "reputation_score": 0.0,
            "contribution_score": float(metrics.get("contribution_score", 0) or 0),
            "voting_participation": float(metrics.get("voting_participation", 0) or 0),
            "proposal_accuracy": float(metrics.get("proposal_accuracy", 0) or 0),
            "created_at": time.time(),
        }
        try:
            with self.db.transaction() as conn:
                self.db.execute(
                    conn,
                    """INSERT INTO users
                       (id, email, display_name, role, pool_id, reputation_score,
                        contribution_score, voting_participation, proposal_accuracy,
                        created_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        user["id"], user["email"], user["display_name"], user["role"],
                        None, 0.0, user["contribution_score"],
                        user["voting_participation"], user["proposal_accuracy"],
                        user["created_at"],
                    ),
                )
        except Exception as e:
            if is_unique_violation(e):
                raise Conflict("User already exists", code="user_exists") from e
            raise

        log.info("USER REGISTERED %s (%s) role=%s", user["id"], email, role)
        return user

    def login(self, email: str) -> dict:
        with self.db.connection() as conn:
            user = self.db.fetch_one(
                conn, "SELECT * FROM users WHERE email = ?", ((email or "").strip().lower(),)
            )
        if not user:
            raise NotFound("User not found")
        return user

    def get_user(self, user_id: str) -> dict:
        with self.db.connection() as conn:
            user = self.db.fetch_one(conn, "SELECT * FROM users WHERE id = ?", (user_id,))
        if not user:
            raise NotFound(f"User {user_id} not found")
        return user

    def update_metrics(self, user_id: str, **metrics) -> dict:
        """Set any of the three reputation inputs. Does not recompute."""
        updates = {k: float(v) for k, v in metrics.items() if k in METRIC_FIELDS and v is not None}
        if not updates:
            return self.get_user(user_id)

        assignments = ", ".join(f"{k} = ?" for k in updates)
        with self.db.transaction() as conn:
            result = self.db.execute(
                conn,
                f"UPDATE users SET {assignments} WHERE id = ?",
                (*updates.values(), user_id),
            )
            if result.rowcount != 1:
                raise NotFound(f"User {user_id} not found")
        return self.get_user(user_id)

    # ── Pools ─────────────────────────────────────────────────────────

    def create_pool(self, name: str, description: str = "",
                    subscription_tier: str = SubscriptionTier.FREE.value,
                    is_private: bool = False, admin_id: Optional[str] = None) -> dict:
        name = (name or "").strip()
        if not name:
            raise InvalidInput("Pool name is required")
        try:
            tier = SubscriptionTier(subscription_tier).value
        except ValueError:
            raise InvalidInput(f"Unknown subscription tier: {subscription_tier!r}")

        pool = {
            "id": _new_id(),
            "name": name,
            "description": description or "",
            "subscription_tier": tier,
            "is_private": bool(is_private),
            "treasury_balance": 0.0,
            "admin_id": admin_id,
            "created_at": time.time(),
        }
        with self.db.transaction() as conn:
            if admin_id and not self.db.fetch_one(conn, "SELECT id FROM users WHERE id = ?", (admin_id,)):
                raise NotFound(f"User {admin_id} not found")
            self.db.execute(
                conn,
                """INSERT INTO pools
                   (id, name, description, subscription_tier, is_private,
                    treasury_balance, admin_id, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    pool["id"], name, pool["description"], tier,
                    1 if is_private else 0, 0.0, admin_id, pool["created_at"],
                ),
            )
            if admin_id:
                self.db.execute(
                    conn, "UPDATE users SET pool_id = ? WHERE id = ?", (pool["id"], admin_id)
                )
            self.audit.record(
                pool["id"], admin_id or "system", AuditAction.POOL_CREATED,
                f"Pool {name} initialized with tier {tier}", conn=conn,
            )

        log.info("POOL CREATED %s (%s) tier=%s", pool["id"], name, tier)
        return pool

    def get_pool(self, pool_id: str) -> dict:
        with self.db.connection() as conn:
            pool = self.db.fetch_one(conn, "SELECT * FROM pools WHERE id = ?", (pool_id,))
        if not pool:
            raise NotFound(f"Pool {pool_id} not found")
        pool["is_private"] = bool(pool["is_private"])
        return pool

    def list_public_pools(self) -> list[dict]:
        with self.db.connection() as conn:
            pools = self.db.fetch_all(
                conn, "SELECT * FROM pools WHERE is_private = 0 ORDER BY created_at ASC"
            )
        for p in pools:
            p["is_private"] = False
        return pools

    def join_pool(self, pool_id: str, user_id: str) -> dict:
        with self.db.transaction() as conn:
            pool = self.db.fetch_one(
                conn, "SELECT id, is_private, admin_id FROM pools WHERE id = ?", (pool_id,)
            )
            if not pool:
                raise NotFound(f"Pool {pool_id} not found")
            if pool["is_private"] and pool["admin_id"] != user_id:
                raise PermissionDenied(f"Pool {pool_id} is private")
            result = self.db.execute(
                conn, "UPDATE users SET pool_id = ? WHERE id = ?", (pool_id, user_id)
            )
            if result.rowcount != 1:
                raise NotFound(f"User {user_id} not found")
            self.audit.record(
                pool_id, user_id, AuditAction.USER_JOINED_POOL,
                f"User {user_id} joined pool", conn=conn,
            )
        return self.get_user(user_id)

    def deposit(self, pool_id: str, user_id: str, amount: float) -> dict:
        """Credit the pool treasury."""
        if amount is None or amount <= 0:
            raise InvalidInput("Deposit amount must be positive")
        with self.db.transaction() as conn:
            result = self.db.execute(
                conn,
                "UPDATE pools SET treasury_balance = treasury_balance + ? WHERE id = ?",
                (float(amount), pool_id),
            )
            if result.rowcount != 1:
                raise NotFound(f"Pool {pool_id} not found")
            self.audit.record(
                pool_id, user_id, AuditAction.TREASURY_DEPOSIT,
                f"Deposited {amount:.2f} into treasury", conn=conn,
            )
        return self.get_pool(pool_id)


# ── Singleton ─────────────────────────────────────────────────────────

_directory: Optional[PoolDirectory] = None


def get_pool_directory() -> PoolDirectory:
    global _directory
    if _directory is None:
        _directory = PoolDirectory()
    return _directory
