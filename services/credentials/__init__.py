"""
Flow Credential Pool

Manages Flow accounts (session tokens) stored one per file:
- Load and hot reload from the credential directory
- Periodic access-token refresh with automatic disable after repeated failures
- Selection of a ready credential for each generation request
"""

from .credential import Credential, extract_session_token, generate_credential_id, mask_id
from .errors import CredentialError, CredentialNotFound, DuplicateCredential, NoneAvailable, NoSecretFound
from .pool import CredentialPool
from .store import CredentialStore

__all__ = [
    "Credential",
    "CredentialPool",
    "CredentialStore",
    "extract_session_token",
    "generate_credential_id",
    "mask_id",
    "CredentialError",
    "CredentialNotFound",
    "DuplicateCredential",
    "NoneAvailable",
    "NoSecretFound",
]
