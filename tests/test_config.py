"""
Tests for vault configuration
"""

import json
import shutil
import tempfile
from pathlib import Path

import pytest

from medvault.config import (
    CONFIG_FILE,
    VAULT_DIR,
    ConfigError,
    VaultConfig,
    VaultExistsError,
    VaultNotFoundError,
    find_vault_root,
    init_vault,
    load_config,
)


@pytest.fixture
def temp_dir():
    """Create a temporary directory for testing"""
    temp = tempfile.mkdtemp()
    yield Path(temp).resolve()
    shutil.rmtree(temp)


class TestVaultConfig:
    """Tests for VaultConfig"""

    def test_defaults(self):
        """Test default configuration"""
        config = VaultConfig()
        assert config.product_name == "MedLedger"
        assert config.signing_timeout == 60.0
        assert config.permission_backend == "json"
        assert not config.collapse_denials
        assert not config.bind_resource_aad

    def test_dict_round_trip(self):
        """Test to_dict/from_dict preserve values"""
        config = VaultConfig(product_name="Acme", permission_backend="sqlite", collapse_denials=True)
        assert VaultConfig.from_dict(config.to_dict()) == config

    def test_from_partial_dict(self):
        """Test missing keys take defaults"""
        config = VaultConfig.from_dict({"product_name": "Acme"})
        assert config.permission_backend == "json"

    def test_invalid_backend(self):
        """Test an unknown backend fails validation"""
        with pytest.raises(ConfigError):
            VaultConfig(permission_backend="redis").validate()

    def test_invalid_timeout(self):
        """Test a non-positive timeout fails validation"""
        with pytest.raises(ConfigError):
            VaultConfig(signing_timeout=0).validate()

    def test_env_overrides(self):
        """Test MEDVAULT_* variables override file values"""
        config = VaultConfig().apply_env({
            "MEDVAULT_PERMISSION_BACKEND": "SQLITE",
            "MEDVAULT_SIGNING_TIMEOUT": "5",
            "MEDVAULT_PRODUCT_NAME": "Acme",
        })
        assert config.permission_backend == "sqlite"
        assert config.signing_timeout == 5.0
        assert config.product_name == "Acme"

    def test_env_bad_timeout(self):
        """Test a non-numeric timeout variable fails"""
        with pytest.raises(ConfigError):
            VaultConfig().apply_env({"MEDVAULT_SIGNING_TIMEOUT": "soon"})


class TestVaultDirectory:
    """Tests for init_vault, load_config and find_vault_root"""

    def test_init_creates_config(self, temp_dir):
        """Test init writes .medvault/config.json"""
        init_vault(temp_dir)
        config_path = temp_dir / VAULT_DIR / CONFIG_FILE
        assert config_path.is_file()
        assert json.loads(config_path.read_text())["product_name"] == "MedLedger"

    def test_init_twice_fails(self, temp_dir):
        """Test init refuses an existing vault"""
        init_vault(temp_dir)
        with pytest.raises(VaultExistsError):
            init_vault(temp_dir)
        init_vault(temp_dir, force=True)

    def test_load_round_trip(self, temp_dir):
        """Test a saved config loads back"""
        init_vault(temp_dir, VaultConfig(product_name="Acme"))
        assert load_config(temp_dir, apply_env=False).product_name == "Acme"

    def test_load_missing(self, temp_dir):
        """Test loading without a vault fails"""
        with pytest.raises(VaultNotFoundError):
            load_config(temp_dir)

    def test_load_corrupt(self, temp_dir):
        """Test a corrupt config file is a config error"""
        init_vault(temp_dir)
        (temp_dir / VAULT_DIR / CONFIG_FILE).write_text("{oops")
        with pytest.raises(ConfigError):
            load_config(temp_dir)

    @pytest.mark.parametrize("timeout", [None, "soon", True])
    def test_load_rejects_unusable_timeout(self, temp_dir, timeout):
        """Test a stored signing timeout must be a positive number"""
        init_vault(temp_dir)
        config_path = temp_dir / VAULT_DIR / CONFIG_FILE
        data = json.loads(config_path.read_text())
        data["signing_timeout"] = timeout
        config_path.write_text(json.dumps(data))
        with pytest.raises(ConfigError):
            load_config(temp_dir, apply_env=False)

    def test_find_root_from_subdirectory(self, temp_dir):
        """Test the vault is found from a nested directory"""
        init_vault(temp_dir)
        nested = temp_dir / "a" / "b"
        nested.mkdir(parents=True)
        assert find_vault_root(nested) == temp_dir

    def test_find_root_without_vault(self, temp_dir):
        """Test a directory without a vault is not reported as one"""
        assert find_vault_root(temp_dir) != temp_dir
