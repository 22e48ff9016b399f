"""Tests for the proposal lifecycle: creation, manual transitions, expiry sweep."""

import time

import pytest

from audit import AuditAction, AuditLog
from errors import InvalidInput, InvalidState, NotFound, PermissionDenied
from ledger import VoteLedger
from proposals import (
    DEFAULT_VOTING_PERIOD_SEC,
    ProposalLifecycle,
    ProposalStatus,
    decide_outcome,
)

LATER = 120


@pytest.fixture
def lifecycle(db):
    return ProposalLifecycle(db)


@pytest.fixture
def ledger(db):
    return VoteLedger(db)


def _soon():
    return time.time() + 60


def _after_expiry():
    return time.time() + LATER


def _cast(ledger, proposal_id, voters, choice):
    for v in voters:
        ledger.cast_vote(proposal_id, v["id"], choice)


# ── Outcome rule ──────────────────────────────────────────────────────


class TestDecideOutcome:

    def test_majority_passes(self):
        assert decide_outcome(6, 5) == ProposalStatus.PASSED

    def test_tie_rejects(self):
        assert decide_outcome(5, 5) == ProposalStatus.REJECTED

    def test_no_votes_rejects(self):
        assert decide_outcome(0, 0) == ProposalStatus.REJECTED

    def test_minority_rejects(self):
        assert decide_outcome(2, 3) == ProposalStatus.REJECTED


# ── Creation ──────────────────────────────────────────────────────────


class TestCreateProposal:

    def test_defaults(self, db, lifecycle, pool, make_member):
        creator = make_member()
        before = time.time()
        p = lifecycle.create_proposal(pool["id"], "  Hire counsel ", "desc", creator["id"])

        assert p["status"] == "active"
        assert p["title"] == "Hire counsel"
        assert p["votes_for"] == p["votes_against"] == 0
        assert p["expires_at"] >= before + DEFAULT_VOTING_PERIOD_SEC
        assert lifecycle.get_proposal(p["id"])["creator_id"] == creator["id"]

        entries = AuditLog(db).query(action=AuditAction.PROPOSAL_CREATED)
        assert len(entries) == 1
        assert entries[0].details == "New proposal created: Hire counsel"

    def test_blank_title(self, lifecycle, pool, make_member):
        creator = make_member()
        with pytest.raises(InvalidInput):
            lifecycle.create_proposal(pool["id"], "   ", "", creator["id"])

    def test_title_too_long(self, lifecycle, pool, make_member):
        creator = make_member()
        with pytest.raises(InvalidInput):
            lifecycle.create_proposal(pool["id"], "x" * 201, "", creator["id"])

    def test_unknown_pool(self, lifecycle, make_member):
        creator = make_member()
        with pytest.raises(NotFound):
            lifecycle.create_proposal("nowhere", "Title", "", creator["id"])

    def test_non_member_is_refused(self, lifecycle, directory, pool):
        outsider = directory.register_user("outsider@example.org")
        with pytest.raises(PermissionDenied):
            lifecycle.create_proposal(pool["id"], "Title", "", outsider["id"])

    def test_list_filters_by_status(self, lifecycle, pool, admin, make_member):
        creator = make_member()
        a = lifecycle.create_proposal(pool["id"], "A", "", creator["id"])
        lifecycle.create_proposal(pool["id"], "B", "", creator["id"])
        lifecycle.transition(a["id"], "closed", admin["id"])

        assert len(lifecycle.list_proposals(pool["id"])) == 2
        active = lifecycle.list_proposals(pool["id"], status="active")
        assert [p["title"] for p in active] == ["B"]


# ── Manual transitions ────────────────────────────────────────────────


class TestTransition:

    def test_close_sets_status_and_timestamp(self, lifecycle, pool, admin, make_member):
        creator = make_member()
        p = lifecycle.create_proposal(pool["id"], "Title", "", creator["id"])
        updated = lifecycle.transition(p["id"], "passed", admin["id"])
        assert updated["status"] == "passed"
        assert updated["closed_at"] is not None

    def test_second_transition_is_invalid_state(self, lifecycle, pool, admin, make_member):
        creator = make_member()
        p = lifecycle.create_proposal(pool["id"], "Title", "", creator["id"])
        lifecycle.transition(p["id"], "passed", admin["id"])
        with pytest.raises(InvalidState):
            lifecycle.transition(p["id"], "rejected", admin["id"])
        assert lifecycle.get_proposal(p["id"])["status"] == "passed"

    @pytest.mark.parametrize("status", ["active", "archived", ""])
    def test_bad_target(self, lifecycle, pool, admin, make_member, status):
        creator = make_member()
        p = lifecycle.create_proposal(pool["id"], "Title", "", creator["id"])
        with pytest.raises(InvalidInput):
            lifecycle.transition(p["id"], status, admin["id"])

    def test_unknown_proposal(self, lifecycle, admin):
        with pytest.raises(NotFound):
            lifecycle.transition("missing", "closed", admin["id"])

    def test_creator_recomputed_once(self, db, directory, lifecycle, pool, admin, make_member):
        creator = make_member(contribution_score=1.0, voting_participation=0.5)
        p = lifecycle.create_proposal(pool["id"], "Title", "", creator["id"])

        lifecycle.transition(p["id"], "passed", admin["id"])
        with pytest.raises(InvalidState):
            lifecycle.transition(p["id"], "closed", admin["id"])

        assert directory.get_user(creator["id"])["reputation_score"] == pytest.approx(0.55)
        updates = AuditLog(db).query(action=AuditAction.REPUTATION_UPDATE)
        assert len(updates) == 1

    def test_recompute_failure_keeps_transition(self, lifecycle, pool, admin, make_member, monkeypatch):
        creator = make_member()
        p = lifecycle.create_proposal(pool["id"], "Title", "", creator["id"])

        def broken(creator_id, pool_id=None):
            raise RuntimeError("reputation store down")

        monkeypatch.setattr(lifecycle.reputation, "recompute_on_transition", broken)
        updated = lifecycle.transition(p["id"], "passed", admin["id"])

        assert updated["status"] == "passed"
        assert lifecycle.get_proposal(p["id"])["status"] == "passed"

    def test_status_change_is_audited(self, db, lifecycle, pool, admin, make_member):
        creator = make_member()
        p = lifecycle.create_proposal(pool["id"], "Title", "", creator["id"])
        lifecycle.transition(p["id"], "closed", admin["id"])
        entries = AuditLog(db).query(action=AuditAction.PROPOSAL_STATUS_CHANGED)
        assert len(entries) == 1
        assert entries[0].user_id == admin["id"]


class TestResolveTransition:

    def test_non_edges_are_ignored(self, lifecycle, make_member):
        creator = make_member(contribution_score=1.0)
        proposal = {"creator_id": creator["id"], "pool_id": creator["pool_id"]}
        assert lifecycle.resolve_transition(proposal, "passed", "rejected") is None
        assert lifecycle.resolve_transition(proposal, "active", "active") is None

    def test_edge_recomputes(self, lifecycle, make_member):
        creator = make_member(contribution_score=1.0)
        proposal = {"creator_id": creator["id"], "pool_id": creator["pool_id"]}
        assert lifecycle.resolve_transition(
            proposal, ProposalStatus.ACTIVE, ProposalStatus.CLOSED
        ) == pytest.approx(0.4)

    def test_missing_creator_is_noop(self, lifecycle):
        proposal = {"creator_id": "gone", "pool_id": None}
        assert lifecycle.resolve_transition(proposal, "active", "passed") is None


# ── Expiry sweep ──────────────────────────────────────────────────────


class TestSweep:

    def test_majority_passes(self, lifecycle, ledger, pool, make_member):
        creator = make_member()
        p = lifecycle.create_proposal(pool["id"], "Title", "", creator["id"], expires_at=_soon())
        _cast(ledger, p["id"], [make_member() for _ in range(6)], "for")
        _cast(ledger, p["id"], [make_member() for _ in range(5)], "against")

        result = lifecycle.sweep_expired(now=_after_expiry())

        assert result.count == 1
        assert result.ok
        assert lifecycle.get_proposal(p["id"])["status"] == "passed"

    def test_tie_rejects(self, lifecycle, ledger, pool, make_member):
        creator = make_member()
        p = lifecycle.create_proposal(pool["id"], "Title", "", creator["id"], expires_at=_soon())
        _cast(ledger, p["id"], [make_member() for _ in range(5)], "for")
        _cast(ledger, p["id"], [make_member() for _ in range(5)], "against")

        lifecycle.sweep_expired(now=_after_expiry())
        assert lifecycle.get_proposal(p["id"])["status"] == "rejected"

    def test_unweighted_counts_decide(self, db, lifecycle, ledger, pool, make_member):
        from reputation import ReputationEngine

        engine = ReputationEngine(db)
        light = [make_member(contribution_score=0.25) for _ in range(2)]
        heavy = make_member(contribution_score=12.5)
        for u in light + [heavy]:
            engine.recompute(u["id"])

        creator = make_member()
        p = lifecycle.create_proposal(pool["id"], "Title", "", creator["id"], expires_at=_soon())
        _cast(ledger, p["id"], light, "for")
        _cast(ledger, p["id"], [heavy], "against")

        tallied = lifecycle.get_proposal(p["id"])
        assert tallied["weighted_votes_against"] > tallied["weighted_votes_for"]

        lifecycle.sweep_expired(now=_after_expiry())
        assert lifecycle.get_proposal(p["id"])["status"] == "passed"

    def test_unexpired_are_left_alone(self, lifecycle, pool, make_member):
        creator = make_member()
        p = lifecycle.create_proposal(pool["id"], "Title", "", creator["id"])
        result = lifecycle.sweep_expired(now=_after_expiry())
        assert result.count == 0
        assert lifecycle.get_proposal(p["id"])["status"] == "active"

    def test_idempotent(self, db, lifecycle, pool, make_member):
        creator = make_member()
        for title in ("One", "Two"):
            lifecycle.create_proposal(pool["id"], title, "", creator["id"], expires_at=_soon())

        first = lifecycle.sweep_expired(now=_after_expiry())
        second = lifecycle.sweep_expired(now=_after_expiry())

        assert first.count == 2
        assert second.count == 0
        assert second.ok
        assert len(AuditLog(db).query(action=AuditAction.PROPOSAL_AUTO_CLOSED)) == 2

    def test_closed_proposals_are_frozen(self, lifecycle, ledger, pool, make_member):
        creator, late = make_member(), make_member()
        p = lifecycle.create_proposal(pool["id"], "Title", "", creator["id"], expires_at=_soon())
        lifecycle.sweep_expired(now=_after_expiry())
        with pytest.raises(InvalidState):
            ledger.cast_vote(p["id"], late["id"], "for")

    def test_triggers_creator_recompute(self, directory, lifecycle, pool, make_member):
        creator = make_member(contribution_score=1.0, voting_participation=0.5)
        lifecycle.create_proposal(pool["id"], "Title", "", creator["id"], expires_at=_soon())
        assert directory.get_user(creator["id"])["reputation_score"] == 0

        lifecycle.sweep_expired(now=_after_expiry())
        assert directory.get_user(creator["id"])["reputation_score"] == pytest.approx(0.55)

    def test_manual_close_wins_over_sweep(self, lifecycle, pool, admin, make_member):
        creator = make_member()
        p = lifecycle.create_proposal(pool["id"], "Title", "", creator["id"], expires_at=_soon())
        lifecycle.transition(p["id"], "closed", admin["id"])

        result = lifecycle.sweep_expired(now=_after_expiry())
        assert result.count == 0
        assert lifecycle.get_proposal(p["id"])["status"] == "closed"
        with pytest.raises(InvalidState):
            lifecycle._auto_close(p["id"])

    def test_failures_are_reported(self, lifecycle, pool, make_member, monkeypatch):
        creator = make_member()
        bad = lifecycle.create_proposal(pool["id"], "Bad", "", creator["id"], expires_at=_soon())
        good = lifecycle.create_proposal(pool["id"], "Good", "", creator["id"], expires_at=_soon())

        original = lifecycle._auto_close

        def flaky(proposal_id):
            if proposal_id == bad["id"]:
                raise RuntimeError("storage hiccup")
            return original(proposal_id)

        monkeypatch.setattr(lifecycle, "_auto_close", flaky)
        result = lifecycle.sweep_expired(now=_after_expiry())

        assert not result.ok
        assert result.failed == [{"id": bad["id"], "error": "storage hiccup"}]
        assert [c["id"] for c in result.closed] == [good["id"]]
        assert lifecycle.get_proposal(bad["id"])["status"] == "active"

        monkeypatch.setattr(lifecycle, "_auto_close", original)
        retry = lifecycle.sweep_expired(now=_after_expiry())
        assert [c["id"] for c in retry.closed] == [bad["id"]]
