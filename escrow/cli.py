"""
Operator CLI for delegation administration and reporting.
"""

import argparse
import sqlite3
import sys

from .core.config import get_db_path
from .core.errors import EngineError
from .core.service import build_service


def _print_delegation(delegation):
    types = ",".join(t.value for t in delegation.approval_types)
    limit = delegation.max_amount if delegation.max_amount is not None else "unlimited"
    until = delegation.valid_until.isoformat() if delegation.valid_until else "no expiry"
    state = "active" if delegation.active else "revoked"
    print(f"   {delegation.id}  {delegation.grantee_id}  [{types}]  limit={limit}  until={until}  {state}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Escrow delegated authority administration")
    parser.add_argument("--db", default=None, help=f"Database path (default: {get_db_path()})")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create the database tables")

    grant = sub.add_parser("grant", help="Grant a delegation")
    grant.add_argument("--grantor", required=True, help="Super admin granting the authority")
    grant.add_argument("--grantee", required=True, help="Actor receiving the authority")
    grant.add_argument("--types", required=True, help="Comma-separated approval action types")
    grant.add_argument("--max-amount", default=None, help="Upper amount limit")
    grant.add_argument("--no-senior-review", action="store_true", help="Do not require senior review")
    grant.add_argument("--valid-until", default=None, help="ISO-8601 expiry timestamp")
    grant.add_argument("--notes", default=None)

    revoke = sub.add_parser("revoke", help="Revoke a delegation")
    revoke.add_argument("--id", required=True, help="Delegation id")
    revoke.add_argument("--revoker", required=True, help="Super admin revoking the authority")

    listing = sub.add_parser("list", help="List delegations")
    listing.add_argument("--requester", help="Super admin listing every delegation")
    listing.add_argument("--grantee", help="Only active delegations held by this actor")

    stats = sub.add_parser("stats", help="Delegation statistics")
    stats.add_argument("--admin", required=True)

    check = sub.add_parser("check", help="Evaluate whether an actor may approve an action")
    check.add_argument("--actor", required=True)
    check.add_argument("--type", required=True, help="Approval action type")
    check.add_argument("--amount", default=None)

    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    try:
        service = build_service(args.db)

        if args.command == "init-db":
            print(f"✅ Database ready at {service.store.db_path}")

        elif args.command == "grant":
            spec = {
                "approval_types": [t.strip() for t in args.types.split(",") if t.strip()],
                "max_amount": args.max_amount,
                "valid_until": args.valid_until,
                "notes": args.notes,
            }
            if args.no_senior_review:
                spec["requires_senior_review"] = False
            delegation = service.authority.grant_delegation(args.grantor, args.grantee, spec)
            print("✅ Delegation granted")
            _print_delegation(delegation)

        elif args.command == "revoke":
            delegation = service.authority.revoke_delegation(args.id, args.revoker)
            print("✅ Delegation revoked")
            _print_delegation(delegation)

        elif args.command == "list":
            if args.grantee:
                delegations = service.authority.list_delegations_for_grantee(args.grantee)
            elif args.requester:
                delegations = service.authority.list_all_delegations(args.requester)
            else:
                print("❌ ERROR: pass --requester or --grantee")
                return 2
            print(f"📋 {len(delegations)} delegation(s)")
            for delegation in delegations:
                _print_delegation(delegation)

        elif args.command == "stats":
            stats = service.authority.delegation_stats(args.admin)
            print(f"📊 Active: {stats['total_active']}  Expired: {stats['total_expired']}  "
                  f"Revoked: {stats['total_revoked']}")
            for action_type, count in stats["by_type"].items():
                if count:
                    print(f"   {action_type}: {count}")

        elif args.command == "check":
            decision = service.policy.can_approve(args.actor, args.type, args.amount)
            if decision.allowed:
                review = " (senior review required)" if decision.requires_senior_review else ""
                print(f"✅ Allowed{review}")
            else:
                print(f"❌ Denied: {decision.reason}")
                return 1

    except EngineError as e:
        print(f"❌ ERROR: {e.code}: {e.reason}")
        return 1
    except (sqlite3.Error, OSError) as e:
        print(f"❌ ERROR: database unavailable: {e}")
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
