"""
Core CLI commands for MedVault.

Commands: init, config
"""

import json
import sys
from pathlib import Path

from ..config import ConfigError, VaultConfig, init_vault, save_config
from .utils import get_root_or_exit, load_config_or_exit


def cmd_init(args):
    """Initialize a new vault in the current directory"""
    config = VaultConfig(
        product_name=args.product,
        permission_backend=args.backend,
    )
    try:
        init_vault(Path.cwd(), config, force=args.force)
    except ConfigError as e:
        print(f"Error: {e}")
        sys.exit(1)

    print(f"Initialized MedVault in {Path.cwd() / '.medvault'}")
    print(f"  Product: {config.product_name}")
    print(f"  Permission backend: {config.permission_backend}")
    print("\nCreate a wallet: medvault wallet create")


def cmd_config(args):
    """Show or change vault configuration"""
    root = get_root_or_exit()
    config = load_config_or_exit(root)

    if args.action == "show":
        print(json.dumps(config.to_dict(), indent=2))
        return

    if args.action == "set":
        if not args.key or args.value is None:
            print("Error: config set needs KEY and VALUE")
            sys.exit(1)
        data = config.to_dict()
        if args.key not in data or args.key == "created_at":
            print(f"Error: Unknown config key: {args.key}")
            sys.exit(1)

        value = args.value
        if isinstance(data[args.key], bool):
            value = value.lower() in ("1", "true", "yes", "on")
        elif args.key == "signing_timeout":
            try:
                value = float(value)
            except ValueError:
                print(f"Error: signing_timeout must be a number, got {value!r}")
                sys.exit(1)
        data[args.key] = value

        updated = VaultConfig.from_dict(data)
        try:
            updated.validate()
        except ConfigError as e:
            print(f"Error: {e}")
            sys.exit(1)
        save_config(root, updated)
        print(f"Set {args.key} = {value}")


def register_core_commands(subparsers):
    """Register core commands with the argument parser."""
    init_parser = subparsers.add_parser("init", help="Initialize a vault")
    init_parser.add_argument("--product", default="MedLedger",
                             help="Product name in the key derivation message")
    init_parser.add_argument("--backend", choices=["memory", "json", "sqlite"], default="json",
                             help="Permission store backend")
    init_parser.add_argument("--force", action="store_true", help="Reinitialize an existing vault")
    init_parser.set_defaults(func=cmd_init)

    config_parser = subparsers.add_parser("config", help="Show or change configuration")
    config_parser.add_argument("action", choices=["show", "set"], help="Config action")
    config_parser.add_argument("key", nargs="?", help="Config key (for set)")
    config_parser.add_argument("value", nargs="?", help="New value (for set)")
    config_parser.set_defaults(func=cmd_config)
