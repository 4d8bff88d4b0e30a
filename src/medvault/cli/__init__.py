"""
MedVault Command Line Interface

This package provides the modular CLI implementation for MedVault.

Modules:
- core: Core commands (init, config)
- wallet: Wallet key commands (wallet)
- envelope: Encryption and storage commands (encrypt, decrypt, store, fetch, profile)
- access: Access control commands (access, ledger)
- utils: Shared utilities
"""

import argparse
import sys

from ..logging import configure_logging
from .access import register_access_commands
from .core import register_core_commands
from .envelope import register_envelope_commands
from .wallet import register_wallet_commands


def create_parser():
    """Create and configure the argument parser with all commands."""
    from .. import __version__

    parser = argparse.ArgumentParser(
        prog="medvault",
        description="MedVault: wallet-encrypted records with consent-gated sharing"
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}"
    )
    parser.add_argument("--log-level", help="Log level (DEBUG, INFO, WARNING, ERROR)")
    parser.add_argument("--log-format", choices=["console", "json", "pretty"],
                        help="Log output format")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    register_core_commands(subparsers)
    register_wallet_commands(subparsers)
    register_envelope_commands(subparsers)
    register_access_commands(subparsers)

    return parser


def main(argv=None):
    """Main CLI entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(0)

    if args.log_level or args.log_format:
        configure_logging(level=args.log_level or "INFO", format=args.log_format or "console")

    args.func(args)


__all__ = [
    'main',
    'create_parser',
    'register_core_commands',
    'register_wallet_commands',
    'register_envelope_commands',
    'register_access_commands',
]
