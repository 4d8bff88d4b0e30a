"""
Tests for the ConsentVault facade
"""

import base64
import shutil
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from medvault.blobstore import NotFound
from medvault.config import VaultConfig, init_vault
from medvault.crypto import LocalWallet, SigningUnavailable
from medvault.envelope import AuthenticationFailure, MalformedEnvelope
from medvault.ledger import ConsentProof, LedgerUnavailable, LocalConsentLedger
from medvault.models import PermissionKey, PermissionStatus
from medvault.permissions import Unauthorized
from medvault.profile import Profile
from medvault.service import AccessDeniedError, ConsentVault


class FailingLedger:
    """Ledger that is always down"""

    def record_approval(self, owner, requester, resource_id, scope, expires_at=None):
        raise LedgerUnavailable("ledger node unreachable")


class RecordingLedger:
    """Ledger that accepts approvals but cannot verify them"""

    def __init__(self):
        self.count = 0

    def record_approval(self, owner, requester, resource_id, scope, expires_at=None):
        self.count += 1
        return ConsentProof(tx_id=f"tx_{self.count}", proof="opaque")


@pytest.fixture
def temp_dir():
    """Create a temporary directory for testing"""
    temp = tempfile.mkdtemp()
    yield Path(temp)
    shutil.rmtree(temp)


@pytest.fixture
def patient():
    return LocalWallet.generate()


@pytest.fixture
def doctor():
    return LocalWallet.generate()


@pytest.fixture
def vault():
    return ConsentVault()


class TestAccessFlow:
    """Tests for the permission surface and its dict results"""

    def test_doctor_patient_scenario(self, vault, patient, doctor):
        """Test request, approve, check, revoke, check"""
        p, d = patient.address, doctor.address
        assert vault.request_access(d, p, "lab_results", "read") == {"status": "REQUESTED"}

        approved = vault.approve_access(p, d, "lab_results", "read", None)
        assert approved["status"] == "APPROVED"
        assert approved["txId"].startswith("ledger_tx_")
        assert approved["proof"].startswith("zkp_")

        assert vault.check_access(p, d, "lab_results", "read") == {"allow": True}

        revoked = vault.revoke_access(p, d, "lab_results")
        assert revoked["status"] == "REVOKED"
        assert vault.check_access(p, d, "lab_results", "read") == {"allow": False, "reason": "REVOKED"}

    def test_revoke_twice_reports_success(self, vault, patient, doctor):
        """Test a repeated revoke still reports REVOKED"""
        p, d = patient.address, doctor.address
        vault.request_access(d, p, "lab_results", "read")
        vault.approve_access(p, d, "lab_results", "read")
        assert vault.revoke_access(p, d, "lab_results")["count"] == 1
        assert vault.revoke_access(p, d, "lab_results") == {"status": "REVOKED", "count": 0}

    def test_deny(self, vault, patient, doctor):
        """Test denying a request"""
        p, d = patient.address, doctor.address
        vault.request_access(d, p, "lab_results", "read")
        assert vault.deny_access(p, d, "lab_results", "read") == {"status": "DENIED"}
        assert vault.check_access(p, d, "lab_results", "read")["reason"] == "NOT_APPROVED"

    def test_unauthorized_caller(self, vault, patient, doctor):
        """Test approve as the requester fails"""
        p, d = patient.address, doctor.address
        vault.request_access(d, p, "lab_results", "read")
        with pytest.raises(Unauthorized):
            vault.approve_access(p, d, "lab_results", "read", caller=d)

    def test_ledger_outage_keeps_request(self, patient, doctor):
        """Test approval fails cleanly when the ledger is down"""
        vault = ConsentVault(ledger=FailingLedger())
        p, d = patient.address, doctor.address
        vault.request_access(d, p, "lab_results", "read")
        with pytest.raises(LedgerUnavailable):
            vault.approve_access(p, d, "lab_results", "read")
        assert vault.check_access(p, d, "lab_results", "read")["reason"] == "NOT_APPROVED"
        assert len(vault.list_pending(p)) == 1

    def test_expiry(self, patient, doctor):
        """Test a lapsed grant reads EXPIRED"""
        now = [datetime(2024, 1, 1, tzinfo=timezone.utc)]
        vault = ConsentVault(clock=lambda: now[0])
        p, d = patient.address, doctor.address
        vault.request_access(d, p, "lab_results", "read")
        vault.approve_access(p, d, "lab_results", "read", now[0] + timedelta(days=1))
        now[0] += timedelta(days=2)
        assert vault.check_access(p, d, "lab_results", "read") == {"allow": False, "reason": "EXPIRED"}

    def test_collapse_denials(self, patient, doctor):
        """Test every denial reads the same when collapsing is on"""
        vault = ConsentVault(config=VaultConfig(collapse_denials=True))
        p, d = patient.address, doctor.address
        assert vault.check_access(p, d, "lab_results", "read") == {"allow": False, "reason": "NOT_AUTHORIZED"}
        vault.request_access(d, p, "lab_results", "read")
        vault.approve_access(p, d, "lab_results", "read")
        assert vault.check_access(p, d, "lab_results", "read") == {"allow": True}
        vault.revoke_access(p, d)
        assert vault.check_access(p, d, "lab_results", "read")["reason"] == "NOT_AUTHORIZED"


class TestEncryption:
    """Tests for wallet-keyed encryption through the facade"""

    def test_round_trip(self, vault, patient):
        """Test the owner decrypts their own envelope"""
        envelope = vault.encrypt(patient.address, patient, b"blood type: O+")
        assert len(envelope) == 28 + len(b"blood type: O+")
        assert vault.decrypt(patient.address, patient, envelope) == b"blood type: O+"

    def test_other_wallet_cannot_decrypt(self, vault, patient, doctor):
        """Test another wallet's key fails authentication"""
        envelope = vault.encrypt(patient.address, patient, b"secret")
        with pytest.raises(AuthenticationFailure):
            vault.decrypt(doctor.address, doctor, envelope)

    def test_locked_wallet(self, vault):
        """Test a locked wallet cannot encrypt"""
        wallet = LocalWallet(locked=True)
        with pytest.raises(SigningUnavailable):
            vault.encrypt(wallet.address, wallet, b"x")

    def test_short_envelope_rejected_before_signing(self, vault):
        """Test a malformed envelope never reaches the wallet"""
        wallet = LocalWallet(locked=True)
        with pytest.raises(MalformedEnvelope):
            vault.decrypt(wallet.address, wallet, b"short")

    def test_resource_binding(self, patient):
        """Test bound envelopes only open for their resource"""
        vault = ConsentVault(config=VaultConfig(bind_resource_aad=True))
        envelope = vault.encrypt(patient.address, patient, b"x-ray", "imaging")
        assert vault.decrypt(patient.address, patient, envelope, "imaging") == b"x-ray"
        with pytest.raises(AuthenticationFailure):
            vault.decrypt(patient.address, patient, envelope, "lab_results")

    def test_derive_key_stable(self, vault, patient):
        """Test the facade derives the same key each time"""
        assert vault.derive_key(patient.address, patient) == vault.derive_key(patient.address, patient)


class TestEnvelopeStorage:
    """Tests for store_envelope and gated fetch_envelope"""

    def test_owner_fetches_without_grant(self, vault, patient):
        """Test the owner always reads their own envelope"""
        envelope = vault.encrypt(patient.address, patient, b"mine", "lab_results")
        vault.store_envelope(patient.address, envelope, "lab_results")
        assert vault.fetch_envelope(patient.address, patient.address, "lab_results", "read") == envelope

    def test_requester_needs_grant(self, vault, patient, doctor):
        """Test fetch is refused until access is approved"""
        p, d = patient.address, doctor.address
        envelope = vault.encrypt(p, patient, b"labs", "lab_results")
        vault.store_envelope(p, envelope, "lab_results")

        with pytest.raises(AccessDeniedError) as excinfo:
            vault.fetch_envelope(p, d, "lab_results", "read")
        assert excinfo.value.decision == {"allow": False, "reason": "NOT_FOUND"}

        vault.request_access(d, p, "lab_results", "read")
        vault.approve_access(p, d, "lab_results", "read")
        assert vault.fetch_envelope(p, d, "lab_results", "read") == envelope

    def _approved_with_envelope(self, vault, patient, doctor):
        p, d = patient.address, doctor.address
        envelope = vault.encrypt(p, patient, b"labs", "lab_results")
        vault.store_envelope(p, envelope, "lab_results")
        vault.request_access(d, p, "lab_results", "read")
        vault.approve_access(p, d, "lab_results", "read")
        return p, d

    def test_fetch_refused_on_tampered_proof(self, vault, patient, doctor):
        """Test a stored proof that no longer matches the ledger blocks fetch"""
        p, d = self._approved_with_envelope(vault, patient, doctor)
        key = PermissionKey(p, d, "lab_results", "read")
        vault.store.compare_and_set(key, PermissionStatus.APPROVED, {"proof": "zkp_" + "0" * 64})

        with pytest.raises(AccessDeniedError) as excinfo:
            vault.fetch_envelope(p, d, "lab_results", "read")
        assert excinfo.value.decision == {"allow": False, "reason": "CONSENT_UNVERIFIED"}

    def test_fetch_refused_when_ledger_entry_missing(self, vault, patient, doctor):
        """Test a grant whose transaction is absent from the ledger blocks fetch"""
        p, d = self._approved_with_envelope(vault, patient, doctor)
        vault.ledger = LocalConsentLedger()

        with pytest.raises(AccessDeniedError) as excinfo:
            vault.fetch_envelope(p, d, "lab_results", "read")
        assert excinfo.value.decision["reason"] == "CONSENT_UNVERIFIED"

    def test_unverified_consent_collapsed(self, patient, doctor):
        """Test collapse_denials also hides the verification failure"""
        vault = ConsentVault(config=VaultConfig(collapse_denials=True))
        p, d = self._approved_with_envelope(vault, patient, doctor)
        vault.ledger = LocalConsentLedger()

        with pytest.raises(AccessDeniedError) as excinfo:
            vault.fetch_envelope(p, d, "lab_results", "read")
        assert excinfo.value.decision == {"allow": False, "reason": "NOT_AUTHORIZED"}

    def test_ledger_without_verification_trusts_status(self, patient, doctor):
        """Test a ledger that cannot verify leaves the grant decisive"""
        vault = ConsentVault(ledger=RecordingLedger())
        p, d = self._approved_with_envelope(vault, patient, doctor)
        assert vault.fetch_envelope(p, d, "lab_results", "read")

    def test_base64_input(self, vault, patient):
        """Test an envelope received as base64 is stored as bytes"""
        envelope = vault.encrypt(patient.address, patient, b"abc")
        result = vault.store_envelope(patient.address, base64.b64encode(envelope).decode())
        assert result == {"resourceId": "profile", "size": len(envelope)}
        assert vault.fetch_envelope(patient.address, patient.address, None, "read") == envelope

    def test_store_rejects_short(self, vault, patient):
        """Test the store refuses input that cannot be an envelope"""
        with pytest.raises(MalformedEnvelope):
            vault.store_envelope(patient.address, b"\x00" * 27)

    def test_fetch_missing(self, vault, patient):
        """Test fetching an unstored resource"""
        with pytest.raises(NotFound):
            vault.fetch_envelope(patient.address, patient.address, "nothing", "read")


class TestProfiles:
    """Tests for encrypted profiles"""

    def test_save_and_load(self, vault, patient):
        """Test a saved profile loads back for its owner"""
        profile = Profile(role="patient", username="ana", age=34, city="Lisbon")
        vault.save_profile(patient.address, patient, profile)
        assert vault.load_profile(patient.address, patient) == profile

    def test_stored_profile_is_ciphertext(self, vault, patient):
        """Test the store never sees profile plaintext"""
        vault.save_profile(patient.address, patient, Profile(role="patient", username="ana"))
        stored = vault.fetch_envelope(patient.address, patient.address, "profile", "read")
        assert b"ana" not in stored


class TestFromConfig:
    """Tests for building a vault from configuration"""

    @pytest.mark.parametrize("backend", ["json", "sqlite"])
    def test_persistent_backends(self, temp_dir, patient, doctor, backend):
        """Test state survives reopening the vault"""
        config = init_vault(temp_dir, VaultConfig(permission_backend=backend))
        p, d = patient.address, doctor.address

        first = ConsentVault.from_config(temp_dir, config)
        first.request_access(d, p, "lab_results", "read")
        tx = first.approve_access(p, d, "lab_results", "read")["txId"]
        first.close()

        second = ConsentVault.from_config(temp_dir, config)
        assert second.check_access(p, d, "lab_results", "read") == {"allow": True}
        assert second.ledger.verify_consent(tx, p, d, "lab_results", "read")
        second.close()
