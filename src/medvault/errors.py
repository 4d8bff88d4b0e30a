"""
Common exception root for MedVault.

Every module defines its own exception family; all of them derive from
VaultError so callers can catch a single base class at the boundary.
"""


class VaultError(Exception):
    """Base exception for all MedVault errors"""
    pass
