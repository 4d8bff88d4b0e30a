"""
Wallet CLI commands for MedVault.

Commands: wallet
"""

import sys

from ..crypto import CryptoError
from .utils import get_wallet_manager


def cmd_wallet(args):
    """Manage local wallet keys"""
    action = args.action
    manager = get_wallet_manager()

    if action == "create":
        try:
            info = manager.create_wallet(
                name=args.name or "default",
                password=args.password,
                set_default=not args.no_default,
            )
        except (CryptoError, OSError) as e:
            print(f"Error creating wallet: {e}")
            sys.exit(1)
        print(f"Created wallet: {info.name}")
        print(f"  Address: {info.address}")
        if info.encrypted:
            print("  Encrypted: Yes")
        print(f"\nPrivate key saved to: .medvault/wallets/{info.name}.key")

    elif action == "list":
        wallets = manager.list_wallets()
        default = manager.get_default_name()
        if not wallets:
            print("No wallets configured.")
            print("Create one: medvault wallet create")
            return
        print("Wallets:\n")
        for name, meta in wallets.items():
            marker = "*" if name == default else " "
            encrypted = "(encrypted)" if meta.get("encrypted") else ""
            print(f"  {marker} {name}: {meta.get('address')} {encrypted}")

    elif action == "show":
        try:
            info = manager.get_info(args.name)
        except CryptoError as e:
            print(f"Error: {e}")
            sys.exit(1)
        print(info.address)

    elif action == "export":
        try:
            print(manager.export_public_key(args.name), end="")
        except CryptoError as e:
            print(f"Error: {e}")
            sys.exit(1)

    elif action == "default":
        if not args.name:
            print(f"Default wallet: {manager.get_default_name() or '(none)'}")
            return
        try:
            manager.set_default(args.name)
        except CryptoError as e:
            print(f"Error: {e}")
            sys.exit(1)
        print(f"Default wallet set to: {args.name}")


def register_wallet_commands(subparsers):
    """Register wallet commands with the argument parser."""
    wallet_parser = subparsers.add_parser("wallet", help="Manage local wallet keys")
    wallet_parser.add_argument("action", choices=["create", "list", "show", "export", "default"],
                               help="Wallet action")
    wallet_parser.add_argument("--name", "-n", help="Wallet name (default wallet if omitted)")
    wallet_parser.add_argument("--password", "-p", help="Password for key encryption")
    wallet_parser.add_argument("--no-default", action="store_true",
                               help="Do not make the new wallet the default")
    wallet_parser.set_defaults(func=cmd_wallet)
