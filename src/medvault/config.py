"""
Vault configuration for MedVault.

Directory structure:
    .medvault/
    ├── config.json            # Vault configuration
    ├── permissions.json       # Permission table (json backend)
    ├── permissions.db         # Permission table (sqlite backend)
    ├── consent_ledger.jsonl   # Local consent ledger (file backend)
    ├── blobs/                 # Ciphertext envelopes (file backend)
    └── wallets/               # Local wallet keys

Environment variables override values from config.json:
    MEDVAULT_PERMISSION_BACKEND, MEDVAULT_SIGNING_TIMEOUT, MEDVAULT_PRODUCT_NAME
"""

import json
import os
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from .crypto import DEFAULT_PRODUCT_NAME
from .errors import VaultError
from .ledger import DEFAULT_PROOF_SALT

VAULT_DIR = ".medvault"
CONFIG_FILE = "config.json"

ENV_PERMISSION_BACKEND = "MEDVAULT_PERMISSION_BACKEND"
ENV_SIGNING_TIMEOUT = "MEDVAULT_SIGNING_TIMEOUT"
ENV_PRODUCT_NAME = "MEDVAULT_PRODUCT_NAME"

PERMISSION_BACKENDS = ("memory", "json", "sqlite")
LEDGER_BACKENDS = ("memory", "file")
BLOB_BACKENDS = ("memory", "file")


class ConfigError(VaultError):
    """Base exception for configuration errors"""
    pass


class VaultNotFoundError(ConfigError):
    """Raised when no vault is initialized"""
    pass


class VaultExistsError(ConfigError):
    """Raised when initializing over an existing vault"""
    pass


@dataclass
class VaultConfig:
    """Configuration for a MedVault directory"""
    product_name: str = DEFAULT_PRODUCT_NAME
    signing_timeout: float = 60.0
    permission_backend: str = "json"
    ledger_backend: str = "file"
    blob_backend: str = "file"
    collapse_denials: bool = False
    bind_resource_aad: bool = False
    ledger_salt: str = DEFAULT_PROOF_SALT
    created_at: str = field(default_factory=lambda: datetime.now().isoformat())

    def validate(self) -> None:
        if not self.product_name:
            raise ConfigError("product_name cannot be empty")
        if self.signing_timeout is None:
            raise ConfigError("signing_timeout is required")
        if isinstance(self.signing_timeout, bool) or not isinstance(self.signing_timeout, (int, float)):
            raise ConfigError(f"signing_timeout must be a number, got {self.signing_timeout!r}")
        if self.signing_timeout <= 0:
            raise ConfigError(f"signing_timeout must be positive, got {self.signing_timeout}")
        if self.permission_backend not in PERMISSION_BACKENDS:
            raise ConfigError(f"Unknown permission backend: {self.permission_backend}")
        if self.ledger_backend not in LEDGER_BACKENDS:
            raise ConfigError(f"Unknown ledger backend: {self.ledger_backend}")
        if self.blob_backend not in BLOB_BACKENDS:
            raise ConfigError(f"Unknown blob backend: {self.blob_backend}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "product_name": self.product_name,
            "signing_timeout": self.signing_timeout,
            "permission_backend": self.permission_backend,
            "ledger_backend": self.ledger_backend,
            "blob_backend": self.blob_backend,
            "collapse_denials": self.collapse_denials,
            "bind_resource_aad": self.bind_resource_aad,
            "ledger_salt": self.ledger_salt,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VaultConfig":
        defaults = cls()
        return cls(
            product_name=data.get("product_name", defaults.product_name),
            signing_timeout=data.get("signing_timeout", defaults.signing_timeout),
            permission_backend=data.get("permission_backend", defaults.permission_backend),
            ledger_backend=data.get("ledger_backend", defaults.ledger_backend),
            blob_backend=data.get("blob_backend", defaults.blob_backend),
            collapse_denials=bool(data.get("collapse_denials", False)),
            bind_resource_aad=bool(data.get("bind_resource_aad", False)),
            ledger_salt=data.get("ledger_salt", defaults.ledger_salt),
            created_at=data.get("created_at", defaults.created_at),
        )

    def apply_env(self, environ: Optional[Dict[str, str]] = None) -> "VaultConfig":
        """Override fields from MEDVAULT_* environment variables."""
        env = os.environ if environ is None else environ
        if env.get(ENV_PERMISSION_BACKEND):
            self.permission_backend = env[ENV_PERMISSION_BACKEND].lower()
        if env.get(ENV_SIGNING_TIMEOUT):
            raw = env[ENV_SIGNING_TIMEOUT]
            try:
                self.signing_timeout = float(raw)
            except ValueError:
                raise ConfigError(f"{ENV_SIGNING_TIMEOUT} must be a number, got {raw!r}") from None
        if env.get(ENV_PRODUCT_NAME):
            self.product_name = env[ENV_PRODUCT_NAME]
        return self


def find_vault_root(start_path: Optional[Path] = None) -> Optional[Path]:
    """
    Find the .medvault directory by searching up from start_path.

    Returns the path containing .medvault, or None if not found.
    """
    current = Path(start_path or os.getcwd()).resolve()

    while current != current.parent:
        if (current / VAULT_DIR).is_dir():
            return current
        current = current.parent

    if (current / VAULT_DIR).is_dir():
        return current

    return None


def vault_dir_for(root: Path) -> Path:
    return Path(root) / VAULT_DIR


def init_vault(root: Path, config: Optional[VaultConfig] = None, force: bool = False) -> VaultConfig:
    """
    Initialize a vault directory under root.

    Raises:
        VaultExistsError: If a vault exists and force=False
    """
    vault_dir = vault_dir_for(root)
    config_path = vault_dir / CONFIG_FILE
    if config_path.is_file() and not force:
        raise VaultExistsError(f"MedVault already initialized in {root}")

    config = config or VaultConfig()
    config.validate()
    vault_dir.mkdir(parents=True, exist_ok=True)
    save_config(root, config)

    gitignore_path = vault_dir / ".gitignore"
    with open(gitignore_path, "w") as f:
        f.write("# MedVault local data\n")
        f.write("wallets/\n")
        f.write("*.key\n")

    return config


def load_config(root: Optional[Path] = None, apply_env: bool = True) -> VaultConfig:
    """
    Load the vault configuration.

    Raises:
        VaultNotFoundError: If no vault is initialized
        ConfigError: If config.json is unreadable or invalid
    """
    root = root or find_vault_root()
    if root is None:
        raise VaultNotFoundError("No MedVault found. Run 'medvault init' first.")
    config_path = vault_dir_for(root) / CONFIG_FILE
    if not config_path.is_file():
        raise VaultNotFoundError(f"No MedVault found in {root}. Run 'medvault init' first.")

    try:
        with open(config_path, "r") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"Cannot read {config_path}: {e}") from e

    config = VaultConfig.from_dict(data)
    if apply_env:
        config.apply_env()
    config.validate()
    return config


def save_config(root: Path, config: VaultConfig) -> None:
    """Save the vault configuration"""
    with open(vault_dir_for(root) / CONFIG_FILE, "w") as f:
        json.dump(config.to_dict(), f, indent=2)
