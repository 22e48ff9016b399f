#!/usr/bin/env python3
# Nyaya CLI v1.0.0
# argparse. Operator access to the sweep, reputation, ballots and audit trail.

import argparse
import json
import sys
import time
from datetime import datetime

from errors import GovernanceError


def _fmt_ts(ts):
    if not ts:
        return "—"
    return datetime.fromtimestamp(float(ts)).strftime("%Y-%m-%d %H:%M")


def cmd_serve(args):
    """Start the API server, with the expiry sweep running beside it."""
    import uvicorn
    from api import app
    from scheduler import start_sweep_monitor

    if not args.no_sweep:
        start_sweep_monitor(interval=args.sweep_interval)
    print(f"Starting Nyaya API on port {args.port}...")
    uvicorn.run(app, host=args.bind, port=args.port)


def cmd_sweep(args):
    """Run one expiry sweep."""
    from scheduler import run_sweep

    result = run_sweep(now=args.now)
    if not result.closed and not result.failed:
        print("No expired proposals.")
        return
    for c in result.closed:
        print(f"  Closed: {c['id']} -> {c['status']}")
    for f in result.failed:
        print(f"  FAILED: {f['id']}: {f['error']}", file=sys.stderr)
    print(f"Swept {result.count} proposal(s).")
    if not result.ok:
        sys.exit(1)


def cmd_sweep_start(args):
    """Start the periodic sweep in the foreground."""
    from scheduler import start_sweep_monitor

    print(f"Starting proposal sweep (interval: {args.interval}s)...")
    start_sweep_monitor(interval=args.interval)
    try:
        while True:
            time.sleep(60)
    except KeyboardInterrupt:
        print("\nProposal sweep stopped.")


def cmd_recompute(args):
    """Recompute a user's reputation score."""
    from reputation import get_reputation_engine

    result = get_reputation_engine().recompute(args.user_id)
    print(f"User: {result['user_id']}")
    print(f"  Reputation: {result['new_score']:.4f}")


def cmd_vote(args):
    """Cast a ballot on behalf of a user."""
    from ledger import get_vote_ledger

    result = get_vote_ledger().cast_vote(args.proposal_id, args.user_id, args.choice)
    print(f"Vote recorded: {result['vote_id']} | {result['choice']} | weight {result['weight']:.4f}")


def cmd_proposals(args):
    """List a pool's proposals."""
    from proposals import get_proposal_lifecycle

    proposals = get_proposal_lifecycle().list_proposals(args.pool_id, status=args.status)
    if not proposals:
        print("No proposals.")
        return
    for p in proposals:
        print(
            f"  [{p['status']:>8}] {p['id']} | {p['title']} | "
            f"{p['votes_for']} for / {p['votes_against']} against | "
            f"expires {_fmt_ts(p['expires_at'])}"
        )


def cmd_audit(args):
    """Show audit entries, newest first."""
    from audit import get_audit_log

    entries = get_audit_log().query(
        pool_id=args.pool, user_id=args.user, action=args.action, limit=args.limit,
    )
    if args.json:
        print(json.dumps([e.to_dict() for e in entries], indent=2))
        return
    if not entries:
        print("No audit entries.")
        return
    for e in entries:
        print(f"  {_fmt_ts(e.timestamp)} | {e.action:<24} | {e.user_id} | {e.details}")


def cmd_verify_audit(args):
    """Replay the audit hash chain."""
    from audit import get_audit_log

    report = get_audit_log().verify_chain()
    if report["valid"]:
        print(f"Audit chain valid ({report['entries_checked']} entries).")
        return
    print(
        f"Audit chain BROKEN at entry {report['broken_at']}: {report.get('reason', '')}",
        file=sys.stderr,
    )
    sys.exit(1)


def main():
    parser = argparse.ArgumentParser(
        prog="nyaya",
        description="Nyaya: civic pool governance",
    )
    sub = parser.add_subparsers(dest="command")

    # nyaya serve
    p_serve = sub.add_parser("serve", help="Start the API server")
    p_serve.add_argument("--bind", default="0.0.0.0", help="Bind address")
    p_serve.add_argument("--port", type=int, default=8000, help="Port")
    p_serve.add_argument("--sweep-interval", type=int, default=3600,
                         help="Seconds between expiry sweeps")
    p_serve.add_argument("--no-sweep", action="store_true", help="Do not run the expiry sweep")
    p_serve.set_defaults(func=cmd_serve)

    # nyaya sweep
    p_sweep = sub.add_parser("sweep", help="Close expired proposals now")
    p_sweep.add_argument("--now", type=float, default=None,
                         help="Evaluate expiry as of this epoch time")
    p_sweep.set_defaults(func=cmd_sweep)

    # nyaya sweep-start
    p_sws = sub.add_parser("sweep-start", help="Run the expiry sweep periodically")
    p_sws.add_argument("--interval", type=int, default=3600, help="Seconds between sweeps")
    p_sws.set_defaults(func=cmd_sweep_start)

    # nyaya recompute <user_id>
    p_rep = sub.add_parser("recompute", help="Recompute a user's reputation")
    p_rep.add_argument("user_id", help="User ID")
    p_rep.set_defaults(func=cmd_recompute)

    # nyaya vote <proposal_id> <user_id> <choice>
    p_vote = sub.add_parser("vote", help="Cast a ballot")
    p_vote.add_argument("proposal_id", help="Proposal ID")
    p_vote.add_argument("user_id", help="Voter user ID")
    p_vote.add_argument("choice", choices=["for", "against"], help="Ballot choice")
    p_vote.set_defaults(func=cmd_vote)

    # nyaya proposals <pool_id>
    p_props = sub.add_parser("proposals", help="List a pool's proposals")
    p_props.add_argument("pool_id", help="Pool ID")
    p_props.add_argument("--status", help="Filter by status")
    p_props.set_defaults(func=cmd_proposals)

    # nyaya audit
    p_audit = sub.add_parser("audit", help="Query the audit trail")
    p_audit.add_argument("--pool", default=None, help="Filter by pool ID")
    p_audit.add_argument("--user", default=None, help="Filter by user ID")
    p_audit.add_argument("--action", default=None, help="Filter by action")
    p_audit.add_argument("--limit", type=int, default=50, help="Max entries")
    p_audit.add_argument("--json", action="store_true", help="JSON output")
    p_audit.set_defaults(func=cmd_audit)

    # nyaya verify-audit
    p_verify = sub.add_parser("verify-audit", help="Verify the audit hash chain")
    p_verify.set_defaults(func=cmd_verify_audit)

    args = parser.parse_args()
    if not args.command:
        parser.print_help()
        sys.exit(1)

    try:
        args.func(args)
    except GovernanceError as e:
        print(f"Error [{e.code}]: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
