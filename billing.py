# Nyaya Billing: subscription tiers and feature gating
#
# Tiers:
#   free        Public pools, one-person-one-vote UI
#   pro         Reputation-weighted voting, cost projection, private pools
#   federation  Everything in pro + the federation module
#
# Payment collection itself happens at the provider; this module only
# issues a checkout link and applies the provider's completion webhook.

import logging
import os
import time
import uuid
from enum import Enum
from typing import Optional

from audit import SYSTEM_ACTOR, AuditAction, AuditLog
from db import Database, get_database
from errors import InvalidInput, NotFound

log = logging.getLogger("nyaya.billing")

APP_URL = os.environ.get("NYAYA_APP_URL", "http://localhost:8000")

# One billing period
SUBSCRIPTION_PERIOD_SEC = 30 * 86400


class SubscriptionTier(str, Enum):
    FREE = "free"
    PRO = "pro"
    FEDERATION = "federation"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    CANCELED = "canceled"
    PAST_DUE = "past_due"


ALL_TIERS = frozenset(t.value for t in SubscriptionTier)

# Features not listed here are available on every tier
FEATURE_TIERS = {
    "reputation_voting": frozenset({SubscriptionTier.PRO.value, SubscriptionTier.FEDERATION.value}),
    "cost_projection": frozenset({SubscriptionTier.PRO.value, SubscriptionTier.FEDERATION.value}),
    "private_pools": frozenset({SubscriptionTier.PRO.value, SubscriptionTier.FEDERATION.value}),
    "federation_module": frozenset({SubscriptionTier.FEDERATION.value}),
}


def tier_allows(tier: str, feature: str) -> bool:
    return tier in FEATURE_TIERS.get(feature, ALL_TIERS)


class BillingEngine:
    """Subscriptions per pool."""

    def __init__(self, db: Optional[Database] = None,
                 audit: Optional[AuditLog] = None):
        self.db = db or get_database()
        self.audit = audit or AuditLog(self.db)

    def check_feature_access(self, pool_id: str, feature: str) -> bool:
        with self.db.connection() as conn:
            pool = self.db.fetch_one(
                conn, "SELECT subscription_tier FROM pools WHERE id = ?", (pool_id,)
            )
        if not pool:
            raise NotFound(f"Pool {pool_id} not found")
        return tier_allows(pool["subscription_tier"], feature)

    def create_checkout(self, pool_id: str, tier: str) -> dict:
        """Checkout link for upgrading a pool. The session id is a placeholder."""
        if tier not in ALL_TIERS or tier == SubscriptionTier.FREE.value:
            raise InvalidInput(f"Cannot check out tier {tier!r}")
        session_id = f"mock_session_{uuid.uuid4().hex[:9]}"
        url = (
            f"{APP_URL}/payment-success?session_id={session_id}"
            f"&poolId={pool_id}&tier={tier}"
        )
        log.info("CHECKOUT pool=%s tier=%s session=%s", pool_id, tier, session_id)
        return {"url": url, "session_id": session_id}

    def handle_webhook(self, event: dict) -> dict:
        """Apply a provider webhook. Only checkout completion changes state."""
        event_type = (event or {}).get("type")
        if event_type != "checkout.session.completed":
            log.debug("WEBHOOK ignored type=%s", event_type)
            return {"received": True, "handled": False}

        obj = ((event.get("data") or {}).get("object") or {})
        metadata = obj.get("metadata") or {}
        pool_id = metadata.get("poolId") or metadata.get("pool_id")
        tier = metadata.get("tier")
        if not pool_id or tier not in ALL_TIERS:
            raise InvalidInput("Webhook metadata must carry poolId and a valid tier")

        period_end = time.time() + SUBSCRIPTION_PERIOD_SEC
        with self.db.transaction() as conn:
            result = self.db.execute(
                conn, "UPDATE pools SET subscription_tier = ? WHERE id = ?", (tier, pool_id)
            )
            if result.rowcount != 1:
                raise NotFound(f"Pool {pool_id} not found")
            self.db.execute(
                conn,
                """INSERT INTO subscriptions
                   (id, pool_id, tier, status, current_period_end,
                    stripe_customer_id, stripe_subscription_id)
                   VALUES (?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(pool_id) DO UPDATE SET
                       tier = excluded.tier,
                       status = excluded.status,
                       current_period_end = excluded.current_period_end""",
                (
                    uuid.uuid4().hex[:12], pool_id, tier, SubscriptionStatus.ACTIVE.value,
                    period_end, obj.get("customer") or "", obj.get("subscription") or "",
                ),
            )
            self.audit.record(
                pool_id, SYSTEM_ACTOR, AuditAction.SUBSCRIPTION_UPDATED,
                f"Pool upgraded to {tier}", conn=conn,
            )

        log.info("SUBSCRIPTION pool=%s tier=%s until=%.0f", pool_id, tier, period_end)
        return {"received": True, "handled": True, "pool_id": pool_id, "tier": tier}

    def get_subscription(self, pool_id: str) -> Optional[dict]:
        with self.db.connection() as conn:
            return self.db.fetch_one(
                conn, "SELECT * FROM subscriptions WHERE pool_id = ?", (pool_id,)
            )


# ── Singleton ─────────────────────────────────────────────────────────

_billing_engine: Optional[BillingEngine] = None


def get_billing_engine() -> BillingEngine:
    global _billing_engine
    if _billing_engine is None:
        _billing_engine = BillingEngine()
    return _billing_engine
