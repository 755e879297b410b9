"""
Provisioning Error Taxonomy

Every failure of the provisioning core surfaces as a ProvisioningError
subclass. Messages never carry key material.
"""

from typing import Optional


class ProvisioningError(Exception):
    """Base class for provisioning failures"""

    code = "provisioning_error"

    def __init__(self, message: str, identity_id: Optional[str] = None):
        super().__init__(message)
        self.identity_id = identity_id


class AlreadyProvisioned(ProvisioningError):
    """Identity already holds an account number and key pair. Nothing to do."""

    code = "already_provisioned"

    def __init__(self, identity_id: str):
        super().__init__(f"Identity {identity_id} has already completed provisioning", identity_id)


class AllocationExhausted(ProvisioningError):
    """No unique account number found within the retry bound"""

    code = "allocation_exhausted"

    def __init__(self, attempts: int, identity_id: Optional[str] = None):
        super().__init__(
            f"Failed to generate unique account number after {attempts} attempts",
            identity_id
        )
        self.attempts = attempts


class PersistFailed(ProvisioningError):
    """Storage-layer failure; the profile was left untouched"""

    code = "persist_failed"


class IdentityNotFound(PersistFailed):
    """No profile row exists for the identity"""

    code = "identity_not_found"

    def __init__(self, identity_id: str):
        super().__init__(f"Identity {identity_id} not found", identity_id)


class ConcurrentUpdateConflict(PersistFailed):
    """Conditional write lost to a concurrent update of the same profile"""

    code = "concurrent_update_conflict"

    def __init__(self, identity_id: str):
        super().__init__(
            f"Profile {identity_id} was modified concurrently; provisioning not committed",
            identity_id
        )


class UnexpectedProvisioningError(ProvisioningError):
    """Any other internal failure (e.g. entropy source unavailable). Not retried."""

    code = "unexpected"
