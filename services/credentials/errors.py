"""Errors raised by the credential pool's administrative operations."""


class CredentialError(Exception):
    """Base class for credential pool errors."""


class DuplicateCredential(CredentialError):
    """Raised when a session token is already registered."""

    def __init__(self, credential_id: str):
        self.credential_id = credential_id
        super().__init__(f"Credential already exists: {credential_id[:16]}...")


class NoSecretFound(CredentialError):
    """Raised when no session token can be extracted from the input."""

    def __init__(self, source: str = "input"):
        self.source = source
        super().__init__(f"No valid session token found in {source}")


class CredentialNotFound(CredentialError):
    """Raised when an operation targets an unknown credential."""

    def __init__(self, credential_id: str):
        self.credential_id = credential_id
        super().__init__(f"Credential not found: {credential_id}")


class NoneAvailable(CredentialError):
    """Raised when no credential is ready for use."""

    def __init__(self):
        super().__init__("No Flow credential available")
