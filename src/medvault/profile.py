"""
Versioned profile schema for encrypted user profiles.

A profile is a small set of known fields per role plus a bounded
extension map. It serializes to canonical JSON, and that JSON is what
gets encrypted into an envelope. Only the wallet owner can read it back.
"""

import json
from dataclasses import dataclass, field, fields
from typing import Any, Dict, Optional

from .envelope import decrypt, encrypt
from .errors import VaultError

PROFILE_SCHEMA_VERSION = 1

ROLES = ("patient", "doctor", "hospital", "other")

MAX_EXTENSIONS = 32
MAX_EXTENSION_KEY_LENGTH = 64
MAX_EXTENSION_VALUE_LENGTH = 1024
MAX_FIELD_LENGTH = 256


class ProfileError(VaultError):
    """Raised when a profile fails schema validation"""
    pass


@dataclass
class Profile:
    """
    Private profile of a wallet holder.

    Known fields cover what the registration forms collect for every
    role; role-specific extras go in ``extensions``.
    """
    role: str
    username: str = ""
    email: str = ""
    phone: str = ""
    gender: str = ""
    age: Optional[int] = None
    country: str = ""
    state: str = ""
    city: str = ""
    license_number: str = ""
    extensions: Dict[str, str] = field(default_factory=dict)
    schema_version: int = PROFILE_SCHEMA_VERSION

    def validate(self) -> None:
        """
        Check the profile against the schema.

        Raises:
            ProfileError: On an unknown role, oversized field or
                an extension map beyond its bounds
        """
        if self.schema_version != PROFILE_SCHEMA_VERSION:
            raise ProfileError(f"Unsupported profile schema version: {self.schema_version}")
        if self.role not in ROLES:
            raise ProfileError(f"Unknown role: {self.role!r}")

        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, str) and len(value) > MAX_FIELD_LENGTH:
                raise ProfileError(f"Field '{f.name}' exceeds {MAX_FIELD_LENGTH} characters")

        if self.age is not None and (not isinstance(self.age, int) or not 0 <= self.age <= 150):
            raise ProfileError(f"Invalid age: {self.age!r}")

        if len(self.extensions) > MAX_EXTENSIONS:
            raise ProfileError(f"Too many extension fields: {len(self.extensions)} > {MAX_EXTENSIONS}")
        for key, value in self.extensions.items():
            if not isinstance(key, str) or not key or len(key) > MAX_EXTENSION_KEY_LENGTH:
                raise ProfileError(f"Invalid extension key: {key!r}")
            if not isinstance(value, str) or len(value) > MAX_EXTENSION_VALUE_LENGTH:
                raise ProfileError(f"Invalid value for extension '{key}'")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schema_version": self.schema_version,
            "role": self.role,
            "username": self.username,
            "email": self.email,
            "phone": self.phone,
            "gender": self.gender,
            "age": self.age,
            "country": self.country,
            "state": self.state,
            "city": self.city,
            "license_number": self.license_number,
            "extensions": dict(self.extensions),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Profile":
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ProfileError(f"Unknown profile fields: {', '.join(sorted(unknown))}")
        if "role" not in data:
            raise ProfileError("Profile is missing 'role'")
        extensions = data.get("extensions")
        if extensions is not None and not isinstance(extensions, dict):
            raise ProfileError("Profile 'extensions' must be an object")
        try:
            profile = cls(**{**data, "extensions": dict(extensions or {})})
            profile.validate()
        except (TypeError, ValueError) as e:
            raise ProfileError(f"Invalid profile: {e}") from e
        return profile

    def to_bytes(self) -> bytes:
        """Canonical JSON encoding of the profile."""
        self.validate()
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":")).encode("utf-8")

    @classmethod
    def from_bytes(cls, data: bytes) -> "Profile":
        try:
            parsed = json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ProfileError(f"Profile is not valid JSON: {e}") from e
        if not isinstance(parsed, dict):
            raise ProfileError("Profile must be a JSON object")
        return cls.from_dict(parsed)


def encrypt_profile(profile: Profile, key: bytes, aad: Optional[bytes] = None) -> bytes:
    """Encrypt a profile into an envelope."""
    return encrypt(profile.to_bytes(), key, aad)


def decrypt_profile(envelope: bytes, key: bytes, aad: Optional[bytes] = None) -> Profile:
    """Decrypt an envelope back into a validated profile."""
    return Profile.from_bytes(decrypt(envelope, key, aad))
