"""
Tests for the local consent ledger
"""

import json
import re
import shutil
import tempfile
from datetime import datetime, timezone
from pathlib import Path

import pytest

from medvault.ledger import (
    GENESIS_HASH,
    LEDGER_FILE,
    LedgerUnavailable,
    LocalConsentLedger,
    compute_proof,
)

PATIENT = "addr_test1patient"
DOCTOR = "addr_test1doctor"


@pytest.fixture
def temp_dir():
    """Create a temporary directory for testing"""
    temp = tempfile.mkdtemp()
    yield Path(temp)
    shutil.rmtree(temp)


@pytest.fixture(params=["memory", "file"])
def ledger(request, temp_dir):
    if request.param == "file":
        return LocalConsentLedger(temp_dir)
    return LocalConsentLedger()


class TestRecordApproval:
    """Tests for record_approval"""

    def test_tx_id_format(self, ledger):
        """Test transaction ids look like ledger_tx_<hex>_<16 hex>"""
        consent = ledger.record_approval(PATIENT, DOCTOR, "lab_results", "read")
        assert re.fullmatch(r"ledger_tx_[0-9a-f]+_[0-9a-f]{16}", consent.tx_id)

    def test_proof_format(self, ledger):
        """Test proofs are zkp_ plus a sha256 hex digest"""
        consent = ledger.record_approval(PATIENT, DOCTOR, "lab_results", "read")
        assert re.fullmatch(r"zkp_[0-9a-f]{64}", consent.proof)

    def test_distinct_transactions(self, ledger):
        """Test each approval gets its own transaction"""
        a = ledger.record_approval(PATIENT, DOCTOR, "lab_results", "read")
        b = ledger.record_approval(PATIENT, DOCTOR, "imaging", "read")
        assert a.tx_id != b.tx_id
        assert len(ledger.entries()) == 2

    def test_no_raw_wallets_stored(self, temp_dir):
        """Test the ledger file holds hashes, not addresses"""
        ledger = LocalConsentLedger(temp_dir)
        ledger.record_approval(PATIENT, DOCTOR, "lab_results", "read")
        content = (temp_dir / LEDGER_FILE).read_text()
        assert PATIENT not in content
        assert DOCTOR not in content

    def test_expiry_recorded(self, ledger):
        """Test the expiry is part of the entry"""
        expires = datetime(2030, 1, 1, tzinfo=timezone.utc)
        consent = ledger.record_approval(PATIENT, DOCTOR, "lab_results", "read", expires)
        assert ledger.find_entry(consent.tx_id).expires_at == expires.isoformat()


class TestVerifyConsent:
    """Tests for verify_consent"""

    def test_verifies_matching_inputs(self, ledger):
        """Test the recorded inputs verify"""
        consent = ledger.record_approval(PATIENT, DOCTOR, "lab_results", "read")
        assert ledger.verify_consent(consent.tx_id, PATIENT, DOCTOR, "lab_results", "read")

    def test_rejects_other_inputs(self, ledger):
        """Test a different requester, resource or scope does not verify"""
        consent = ledger.record_approval(PATIENT, DOCTOR, "lab_results", "read")
        assert not ledger.verify_consent(consent.tx_id, PATIENT, "addr_test1other", "lab_results", "read")
        assert not ledger.verify_consent(consent.tx_id, PATIENT, DOCTOR, "imaging", "read")
        assert not ledger.verify_consent(consent.tx_id, PATIENT, DOCTOR, "lab_results", "write")

    def test_presented_proof_must_match(self, ledger):
        """Test a proof carried by the caller is compared with the entry"""
        consent = ledger.record_approval(PATIENT, DOCTOR, "lab_results", "read")
        assert ledger.verify_consent(consent.tx_id, PATIENT, DOCTOR, "lab_results", "read",
                                     proof=consent.proof)
        assert not ledger.verify_consent(consent.tx_id, PATIENT, DOCTOR, "lab_results", "read",
                                         proof="zkp_" + "f" * 64)

    def test_unknown_tx(self, ledger):
        """Test an unknown transaction does not verify"""
        assert not ledger.verify_consent("ledger_tx_0_0", PATIENT, DOCTOR, "lab_results", "read")

    def test_proof_recomputable(self, ledger):
        """Test the proof is the documented hash of the inputs"""
        consent = ledger.record_approval(PATIENT, DOCTOR, "lab_results", "read")
        entry = ledger.find_entry(consent.tx_id)
        expected = compute_proof(PATIENT, DOCTOR, "lab_results", "read", entry.timestamp_ms, ledger.salt)
        assert consent.proof == expected

    def test_salt_changes_proof(self):
        """Test proofs depend on the salt"""
        a = compute_proof(PATIENT, DOCTOR, "r", "read", 1000, "salt-a")
        b = compute_proof(PATIENT, DOCTOR, "r", "read", 1000, "salt-b")
        assert a != b


class TestVerifyChain:
    """Tests for ledger chain verification"""

    def test_empty_chain_valid(self, ledger):
        """Test an empty ledger verifies"""
        result = ledger.verify_chain()
        assert result.valid
        assert result.head_hash == GENESIS_HASH

    def test_chain_links(self, ledger):
        """Test entries link to their predecessor"""
        for resource in ("a", "b", "c"):
            ledger.record_approval(PATIENT, DOCTOR, resource, "read")
        entries = ledger.entries()
        assert entries[0].prev_hash == GENESIS_HASH
        assert entries[1].prev_hash == entries[0].entry_hash
        result = ledger.verify_chain()
        assert result.valid
        assert result.entries_checked == 3

    def test_tampering_detected(self, temp_dir):
        """Test editing an entry on disk breaks the chain"""
        ledger = LocalConsentLedger(temp_dir)
        for resource in ("a", "b"):
            ledger.record_approval(PATIENT, DOCTOR, resource, "read")

        path = temp_dir / LEDGER_FILE
        lines = path.read_text().splitlines()
        entry = json.loads(lines[0])
        entry["proof"] = "zkp_" + "0" * 64
        lines[0] = json.dumps(entry)
        path.write_text("\n".join(lines) + "\n")

        result = ledger.verify_chain()
        assert not result.valid
        assert result.broken_at == 0

    def test_persists_across_instances(self, temp_dir):
        """Test a reopened ledger continues the chain"""
        LocalConsentLedger(temp_dir).record_approval(PATIENT, DOCTOR, "a", "read")
        reopened = LocalConsentLedger(temp_dir)
        reopened.record_approval(PATIENT, DOCTOR, "b", "read")
        assert [e.sequence for e in reopened.entries()] == [0, 1]
        assert reopened.verify_chain().valid

    def test_stats(self, ledger):
        """Test ledger statistics"""
        consent = ledger.record_approval(PATIENT, DOCTOR, "a", "read")
        stats = ledger.get_stats()
        assert stats["entries"] == 1
        assert stats["last_tx"] == consent.tx_id


class TestLedgerUnavailable:
    """Tests for I/O failures"""

    def test_corrupt_file(self, temp_dir):
        """Test an unreadable ledger file surfaces as unavailable"""
        (temp_dir / LEDGER_FILE).write_text("{broken\n")
        ledger = LocalConsentLedger(temp_dir)
        with pytest.raises(LedgerUnavailable):
            ledger.record_approval(PATIENT, DOCTOR, "a", "read")
