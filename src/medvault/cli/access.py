"""
Access control CLI commands for MedVault.

Commands: access, ledger
"""

import json
import sys

from ..errors import VaultError
from ..ledger import LocalConsentLedger
from ..models import PermissionStatus
from .utils import format_hash, format_timestamp, open_vault, parse_expiry, resolve_address


def _print_records(records):
    if not records:
        print("No permissions found.")
        return
    for record in records:
        print(f"  [{record.status.value:<9}] {record.resource_id}:{record.scope}")
        print(f"      Owner:     {record.owner}")
        print(f"      Requester: {record.requester}")
        print(f"      Created:   {format_timestamp(record.created_at)}")
        if record.expires_at:
            print(f"      Expires:   {format_timestamp(record.expires_at)}")
        if record.tx_id:
            print(f"      Tx:        {record.tx_id}")


def cmd_access(args):
    """Request, grant, deny, revoke and check access"""
    action = args.action
    vault = open_vault()

    try:
        if action == "request":
            requester = resolve_address(args.requester, args.wallet)
            if not args.owner:
                print("Error: --owner required for request")
                sys.exit(1)
            result = vault.request_access(requester, args.owner, args.resource, args.scope)
            print(f"Access {result['status']}")

        elif action in ("approve", "deny", "revoke"):
            owner = resolve_address(args.owner, args.wallet)
            if not args.requester:
                print(f"Error: --requester required for {action}")
                sys.exit(1)
            if action == "approve":
                result = vault.approve_access(
                    owner, args.requester, args.resource, args.scope,
                    expires_at=parse_expiry(args.expires),
                )
                print(f"Access {result['status']}")
                print(f"  Tx: {result['txId']}")
                print(f"  Proof: {format_hash(result['proof'], 24)}...")
            elif action == "deny":
                result = vault.deny_access(owner, args.requester, args.resource, args.scope)
                print(f"Access {result['status']}")
            else:
                result = vault.revoke_access(owner, args.requester, args.resource)
                print(f"Access {result['status']} ({result['count']} record(s) changed)")

        elif action == "check":
            requester = resolve_address(args.requester, args.wallet)
            if not args.owner:
                print("Error: --owner required for check")
                sys.exit(1)
            result = vault.check_access(args.owner, requester, args.resource, args.scope)
            print(json.dumps(result))
            sys.exit(0 if result["allow"] else 2)

        elif action == "pending":
            owner = resolve_address(args.owner, args.wallet)
            records = vault.list_pending(owner)
            print(f"Pending requests ({len(records)}):\n")
            _print_records(records)

        elif action == "list":
            status = PermissionStatus(args.status) if args.status else None
            records = vault.list_records(owner=args.owner, requester=args.requester, status=status)
            _print_records(records)

    except VaultError as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        vault.close()


def cmd_ledger(args):
    """Inspect and verify the consent ledger"""
    vault = open_vault()
    ledger = vault.ledger
    try:
        if not isinstance(ledger, LocalConsentLedger):
            print("Error: ledger inspection needs the local consent ledger")
            sys.exit(1)

        if args.action == "verify":
            result = ledger.verify_chain()
            print(f"Ledger verification: {'PASSED' if result.valid else 'FAILED'}")
            print(f"Entries checked: {result.entries_checked}")
            print(f"Head hash: {format_hash(result.head_hash, 16)}...")
            if result.errors:
                print("\nErrors:")
                for err in result.errors:
                    print(f"  x {err}")
            sys.exit(0 if result.valid else 1)

        elif args.action == "show":
            stats = ledger.get_stats()
            print("Consent ledger:\n")
            print(f"  Entries: {stats['entries']}")
            print(f"  Head hash: {format_hash(stats['head_hash'], 16)}...")
            for entry in ledger.entries()[-args.limit:]:
                print(f"\n  #{entry.sequence} {entry.tx_id}")
                print(f"      Proof: {format_hash(entry.proof, 24)}...")
                if entry.expires_at:
                    print(f"      Expires: {entry.expires_at}")

        elif args.action == "verify-consent":
            missing = [n for n in ("tx", "owner", "requester") if not getattr(args, n)]
            if missing:
                print(f"Error: verify-consent needs --{', --'.join(missing)}")
                sys.exit(1)
            ok = ledger.verify_consent(
                args.tx, args.owner, args.requester, args.resource or "profile", args.scope
            )
            print(f"Consent {'VERIFIED' if ok else 'NOT VERIFIED'}")
            sys.exit(0 if ok else 1)

    except VaultError as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        vault.close()


def register_access_commands(subparsers):
    """Register access control commands with the argument parser."""
    access_parser = subparsers.add_parser("access", help="Manage access permissions")
    access_parser.add_argument(
        "action",
        choices=["request", "approve", "deny", "revoke", "check", "pending", "list"],
        help="Access action",
    )
    access_parser.add_argument("--owner", help="Owner address")
    access_parser.add_argument("--requester", help="Requester address")
    access_parser.add_argument("--resource", "-r", help="Resource id (default: profile)")
    access_parser.add_argument("--scope", "-s", default="read", help="Access scope (default: read)")
    access_parser.add_argument("--expires", "-e", help="Expiry for approve (ISO-8601 or 30m/12h/7d)")
    access_parser.add_argument("--status", type=str.upper,
                               choices=[s.value for s in PermissionStatus],
                               help="Status filter for list")
    access_parser.add_argument("--wallet", "-w",
                               help="Wallet name supplying your own address")
    access_parser.set_defaults(func=cmd_access)

    ledger_parser = subparsers.add_parser("ledger", help="Inspect the consent ledger")
    ledger_parser.add_argument("action", choices=["verify", "show", "verify-consent"],
                               help="Ledger action")
    ledger_parser.add_argument("--limit", "-l", type=int, default=10, help="Entries to show")
    ledger_parser.add_argument("--tx", help="Transaction id (for verify-consent)")
    ledger_parser.add_argument("--owner", help="Owner address (for verify-consent)")
    ledger_parser.add_argument("--requester", help="Requester address (for verify-consent)")
    ledger_parser.add_argument("--resource", "-r", help="Resource id (for verify-consent)")
    ledger_parser.add_argument("--scope", "-s", default="read", help="Scope (for verify-consent)")
    ledger_parser.set_defaults(func=cmd_ledger)
