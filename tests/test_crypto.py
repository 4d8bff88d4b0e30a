"""
Tests for wallet-derived keys and local wallets
"""

import hashlib
import shutil
import subprocess
import sys
import tempfile
import textwrap
import threading
import time
from pathlib import Path

import pytest
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from medvault.crypto import (
    CryptoError,
    LocalWallet,
    SigningCapability,
    SigningUnavailable,
    WalletKeyManager,
    WalletNotFoundError,
    derive_key,
    key_message,
    key_session,
)


class StaticSigner(SigningCapability):
    """Signer returning a fixed signature"""

    def __init__(self, signature, address=None):
        self.signature = signature
        self.address = address
        self.messages = []

    def sign(self, message):
        self.messages.append(message)
        return self.signature


class RejectingSigner(SigningCapability):
    """Signer whose user always clicks 'reject'"""

    def sign(self, message):
        raise RuntimeError("User rejected the request")


class HangingSigner(SigningCapability):
    """Signer that never answers until released"""

    def __init__(self):
        self.release = threading.Event()

    def sign(self, message):
        self.release.wait(5)
        return b"late"


@pytest.fixture
def temp_dir():
    """Create a temporary directory for testing"""
    temp = tempfile.mkdtemp()
    yield Path(temp)
    shutil.rmtree(temp)


class TestDeriveKey:
    """Tests for derive_key"""

    def test_key_is_32_bytes(self):
        """Test the derived key length"""
        key = derive_key("addr1alice", StaticSigner(b"sig-bytes"))
        assert len(key) == 32

    def test_matches_hkdf_sha256_without_salt_or_info(self):
        """Test derivation is plain HKDF-SHA256 over the signature"""
        signature = b"\x01\x02\x03" * 20
        expected = HKDF(algorithm=hashes.SHA256(), length=32, salt=None, info=None).derive(signature)
        assert derive_key("addr1alice", StaticSigner(signature)) == expected

    def test_signs_the_fixed_message(self):
        """Test the wallet is asked to sign the product message"""
        signer = StaticSigner(b"sig")
        derive_key("addr1alice", signer)
        assert signer.messages == [b"MedLedger Profile Encryption Key"]

    def test_custom_product_name(self):
        """Test the product name changes the message"""
        assert key_message("Acme") == b"Acme Profile Encryption Key"

    def test_deterministic(self):
        """Test the same wallet derives the same key every time"""
        wallet = LocalWallet.generate()
        assert derive_key(wallet.address, wallet) == derive_key(wallet.address, wallet)

    def test_distinct_wallets_distinct_keys(self):
        """Test different wallets derive different keys"""
        a, b = LocalWallet.generate(), LocalWallet.generate()
        assert derive_key(a.address, a) != derive_key(b.address, b)

    def test_hex_signature_decoded(self):
        """Test a hex string signature is treated as its bytes"""
        raw = hashlib.sha256(b"x").digest()
        assert derive_key("addr1a", StaticSigner(raw.hex())) == derive_key("addr1a", StaticSigner(raw))


class TestSigningUnavailable:
    """Tests for signing failures"""

    def test_no_signer(self):
        """Test a missing capability fails"""
        with pytest.raises(SigningUnavailable):
            derive_key("addr1alice", None)

    def test_locked_wallet(self):
        """Test a locked wallet fails"""
        wallet = LocalWallet(locked=True)
        with pytest.raises(SigningUnavailable):
            derive_key(wallet.address, wallet)

    def test_user_rejection_wrapped(self):
        """Test arbitrary signer errors become SigningUnavailable"""
        with pytest.raises(SigningUnavailable, match="rejected"):
            derive_key("addr1alice", RejectingSigner())

    def test_empty_signature(self):
        """Test an empty signature is not usable key material"""
        with pytest.raises(SigningUnavailable):
            derive_key("addr1alice", StaticSigner(b""))

    def test_signer_bound_to_other_wallet(self):
        """Test a signer bound to another address is refused"""
        wallet = LocalWallet.generate()
        with pytest.raises(SigningUnavailable):
            derive_key("addr1someoneelse", wallet)

    def test_timeout(self):
        """Test a wallet that never answers times out"""
        signer = HangingSigner()
        try:
            with pytest.raises(SigningUnavailable, match="did not respond"):
                derive_key("addr1alice", signer, timeout=0.1)
        finally:
            signer.release.set()

    def test_abandoned_signer_does_not_block_exit(self):
        """Test a process exits promptly after a signing timeout"""
        script = textwrap.dedent("""
            import time
            from medvault.crypto import SigningCapability, SigningUnavailable, derive_key

            class Stuck(SigningCapability):
                def sign(self, message):
                    time.sleep(30)
                    return b"late"

            try:
                derive_key("addr1alice", Stuck(), timeout=0.2)
            except SigningUnavailable:
                print("timed out")
        """)
        started = time.monotonic()
        result = subprocess.run(
            [sys.executable, "-c", script],
            capture_output=True,
            text=True,
            timeout=20,
        )
        assert result.returncode == 0, result.stderr
        assert "timed out" in result.stdout
        assert time.monotonic() - started < 10


class TestKeySession:
    """Tests for key_session"""

    def test_key_wiped_after_block(self):
        """Test the key buffer is zeroed on exit"""
        wallet = LocalWallet.generate()
        with key_session(wallet.address, wallet) as key:
            held = key
            assert any(held)
        assert held == bytearray(32)

    def test_key_wiped_on_error(self):
        """Test the key buffer is zeroed when the block raises"""
        wallet = LocalWallet.generate()
        with pytest.raises(ValueError):
            with key_session(wallet.address, wallet) as key:
                held = key
                raise ValueError("boom")
        assert held == bytearray(32)


class TestWalletKeyManager:
    """Tests for on-disk wallet keys"""

    def test_create_and_load(self, temp_dir):
        """Test a created wallet loads back with the same address"""
        manager = WalletKeyManager(temp_dir)
        info = manager.create_wallet("alice")
        wallet = manager.load_wallet("alice")
        assert wallet.address == info.address
        assert manager.get_default_name() == "alice"

    def test_private_key_permissions(self, temp_dir):
        """Test the private key file is owner-only"""
        manager = WalletKeyManager(temp_dir)
        manager.create_wallet("alice")
        mode = (temp_dir / "wallets" / "alice.key").stat().st_mode & 0o777
        assert mode == 0o600

    def test_password_protected(self, temp_dir):
        """Test an encrypted key needs its password"""
        manager = WalletKeyManager(temp_dir)
        manager.create_wallet("alice", password="hunter2")
        assert manager.load_wallet("alice", "hunter2").address
        with pytest.raises(CryptoError):
            manager.load_wallet("alice")

    def test_missing_wallet(self, temp_dir):
        """Test loading an unknown wallet fails"""
        manager = WalletKeyManager(temp_dir)
        with pytest.raises(WalletNotFoundError):
            manager.load_wallet("nobody")

    def test_default_switch(self, temp_dir):
        """Test changing the default wallet"""
        manager = WalletKeyManager(temp_dir)
        manager.create_wallet("alice")
        manager.create_wallet("bob", set_default=False)
        assert manager.get_default_name() == "alice"
        manager.set_default("bob")
        assert manager.get_default_name() == "bob"
        assert set(manager.list_wallets()) == {"alice", "bob"}

    def test_loaded_wallet_derives_same_key(self, temp_dir):
        """Test a stored wallet keeps its key across loads"""
        manager = WalletKeyManager(temp_dir)
        manager.create_wallet("alice")
        first = manager.load_wallet("alice")
        second = manager.load_wallet("alice")
        assert derive_key(first.address, first) == derive_key(second.address, second)
