"""
Shared utilities for MedVault CLI commands.
"""

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

from ..config import ConfigError, find_vault_root, load_config, vault_dir_for
from ..crypto import CryptoError, LocalWallet, WalletKeyManager
from ..service import ConsentVault


def get_root_or_exit() -> Path:
    """Find the vault root or exit with an error message."""
    root = find_vault_root()
    if root is None:
        print("Error: No MedVault found. Run 'medvault init' first.")
        sys.exit(1)
    return root


def load_config_or_exit(root: Path):
    """Load config or exit with error message."""
    try:
        return load_config(root)
    except ConfigError as e:
        print(f"Error: {e}")
        sys.exit(1)


def open_vault() -> ConsentVault:
    """Open the ConsentVault for the current directory."""
    root = get_root_or_exit()
    config = load_config_or_exit(root)
    return ConsentVault.from_config(root, config)


def get_wallet_manager() -> WalletKeyManager:
    return WalletKeyManager(vault_dir_for(get_root_or_exit()))


def load_wallet_or_exit(name: Optional[str] = None, password: Optional[str] = None) -> LocalWallet:
    """Load a local wallet or exit with error message."""
    try:
        return get_wallet_manager().load_wallet(name, password)
    except CryptoError as e:
        print(f"Error: {e}")
        sys.exit(1)


def resolve_address(address: Optional[str], wallet_name: Optional[str] = None) -> str:
    """Use the given address, else the address of a stored wallet."""
    if address:
        return address
    try:
        return get_wallet_manager().get_info(wallet_name).address
    except CryptoError as e:
        print(f"Error: {e}")
        sys.exit(1)


def parse_expiry(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an expiry given as ISO-8601 or a relative duration.

    Relative forms: 30m, 12h, 7d
    """
    if not value:
        return None
    units = {"m": "minutes", "h": "hours", "d": "days"}
    if value[-1] in units and value[:-1].isdigit():
        delta = timedelta(**{units[value[-1]]: int(value[:-1])})
        return datetime.now(timezone.utc) + delta
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        print(f"Error: Invalid expiry: {value!r} (use ISO-8601 or 30m/12h/7d)")
        sys.exit(1)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_timestamp(timestamp) -> str:
    """Format a timestamp for display."""
    if isinstance(timestamp, datetime):
        return timestamp.strftime("%Y-%m-%d %H:%M")
    return str(timestamp)[:16] if timestamp else "-"


def format_hash(hash_str: str, length: int = 12) -> str:
    """Format a hash for display (truncated)."""
    return hash_str[:length] if hash_str else "N/A"
