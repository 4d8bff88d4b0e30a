"""
Encryption and storage CLI commands for MedVault.

Commands: encrypt, decrypt, store, fetch, profile
"""

import json
import sys
from pathlib import Path

from ..envelope import decode_envelope, encode_envelope
from ..errors import VaultError
from ..profile import Profile
from .utils import load_wallet_or_exit, open_vault, resolve_address


def _read_input(path):
    if path == "-":
        return sys.stdin.buffer.read()
    try:
        return Path(path).read_bytes()
    except OSError as e:
        print(f"Error: Cannot read {path}: {e}")
        sys.exit(1)


def _write_output(path, data: bytes):
    if not path or path == "-":
        sys.stdout.buffer.write(data)
        sys.stdout.flush()
        return
    Path(path).write_bytes(data)
    print(f"Wrote {len(data)} bytes to {path}")


def cmd_encrypt(args):
    """Encrypt a file under a wallet-derived key"""
    vault = open_vault()
    try:
        wallet = load_wallet_or_exit(args.wallet, args.password)
        plaintext = _read_input(args.input)
        envelope = vault.encrypt(wallet.address, wallet, plaintext, args.resource)
    except VaultError as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        vault.close()
    if args.base64:
        envelope = (encode_envelope(envelope) + "\n").encode("ascii")
    _write_output(args.output, envelope)


def cmd_decrypt(args):
    """Decrypt an envelope with a wallet-derived key"""
    vault = open_vault()
    try:
        wallet = load_wallet_or_exit(args.wallet, args.password)
        data = _read_input(args.input)
        envelope = decode_envelope(data.decode("ascii").strip()) if args.base64 else data
        plaintext = vault.decrypt(wallet.address, wallet, envelope, args.resource)
    except (VaultError, UnicodeDecodeError) as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        vault.close()
    _write_output(args.output, plaintext)


def cmd_store(args):
    """Store an envelope for an owner"""
    vault = open_vault()
    try:
        owner = resolve_address(args.owner, args.wallet)
        data = _read_input(args.input)
        envelope = data.decode("ascii").strip() if args.base64 else data
        result = vault.store_envelope(owner, envelope, args.resource)
    except (VaultError, UnicodeDecodeError) as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        vault.close()
    print(f"Stored envelope for '{result['resourceId']}' ({result['size']} bytes)")


def cmd_fetch(args):
    """Fetch an envelope if access allows"""
    vault = open_vault()
    try:
        requester = resolve_address(args.requester, args.wallet)
        envelope = vault.fetch_envelope(args.owner, requester, args.resource, args.scope)
    except VaultError as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        vault.close()
    if args.base64:
        envelope = (encode_envelope(envelope) + "\n").encode("ascii")
    _write_output(args.output, envelope)


def cmd_profile(args):
    """Save or show the encrypted profile of a wallet"""
    vault = open_vault()
    try:
        wallet = load_wallet_or_exit(args.wallet, args.password)

        if args.action == "save":
            if not args.input:
                print("Error: --input required for profile save")
                sys.exit(1)
            profile = Profile.from_dict(json.loads(_read_input(args.input)))
            result = vault.save_profile(wallet.address, wallet, profile)
            print(f"Profile saved ({result['size']} bytes encrypted)")

        elif args.action == "show":
            profile = vault.load_profile(wallet.address, wallet)
            print(json.dumps(profile.to_dict(), indent=2))

    except (VaultError, ValueError) as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        vault.close()


def _add_wallet_args(parser):
    parser.add_argument("--wallet", "-w", help="Wallet name (default wallet if omitted)")
    parser.add_argument("--password", "-p", help="Wallet key password")


def register_envelope_commands(subparsers):
    """Register encryption and storage commands with the argument parser."""
    encrypt_parser = subparsers.add_parser("encrypt", help="Encrypt a file")
    encrypt_parser.add_argument("input", help="Input file ('-' for stdin)")
    encrypt_parser.add_argument("--output", "-o", help="Output file (stdout if omitted)")
    encrypt_parser.add_argument("--resource", "-r", help="Resource id (default: profile)")
    encrypt_parser.add_argument("--base64", action="store_true", help="Write base64 instead of raw bytes")
    _add_wallet_args(encrypt_parser)
    encrypt_parser.set_defaults(func=cmd_encrypt)

    decrypt_parser = subparsers.add_parser("decrypt", help="Decrypt an envelope")
    decrypt_parser.add_argument("input", help="Envelope file ('-' for stdin)")
    decrypt_parser.add_argument("--output", "-o", help="Output file (stdout if omitted)")
    decrypt_parser.add_argument("--resource", "-r", help="Resource id (default: profile)")
    decrypt_parser.add_argument("--base64", action="store_true", help="Input is base64")
    _add_wallet_args(decrypt_parser)
    decrypt_parser.set_defaults(func=cmd_decrypt)

    store_parser = subparsers.add_parser("store", help="Store an envelope")
    store_parser.add_argument("input", help="Envelope file ('-' for stdin)")
    store_parser.add_argument("--owner", help="Owner address (default wallet if omitted)")
    store_parser.add_argument("--resource", "-r", help="Resource id (default: profile)")
    store_parser.add_argument("--base64", action="store_true", help="Input is base64")
    store_parser.add_argument("--wallet", "-w", help="Wallet name for the owner address")
    store_parser.set_defaults(func=cmd_store)

    fetch_parser = subparsers.add_parser("fetch", help="Fetch an envelope if access allows")
    fetch_parser.add_argument("--owner", required=True, help="Owner address")
    fetch_parser.add_argument("--requester", help="Requester address (default wallet if omitted)")
    fetch_parser.add_argument("--resource", "-r", help="Resource id (default: profile)")
    fetch_parser.add_argument("--scope", "-s", default="read", help="Access scope")
    fetch_parser.add_argument("--output", "-o", help="Output file (stdout if omitted)")
    fetch_parser.add_argument("--base64", action="store_true", help="Write base64 instead of raw bytes")
    fetch_parser.add_argument("--wallet", "-w", help="Wallet name for the requester address")
    fetch_parser.set_defaults(func=cmd_fetch)

    profile_parser = subparsers.add_parser("profile", help="Save or show the encrypted profile")
    profile_parser.add_argument("action", choices=["save", "show"], help="Profile action")
    profile_parser.add_argument("--input", "-i", help="Profile JSON file (for save)")
    _add_wallet_args(profile_parser)
    profile_parser.set_defaults(func=cmd_profile)
