"""
Provisioning Orchestrator Module

Composes account number allocation, key generation and commitment hashing
into one all-or-nothing update of the identity profile.

The plaintext private key leaves this module exactly once, inside the
OnboardingResult returned by provision() (or regenerate_for_recovery()).
It is never stored, logged or audited; only its commitment is.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Set, Union

from .audit import AuditTrail, AuditEventType
from .commitment import commit
from .errors import (
    AllocationExhausted, AlreadyProvisioned, ConcurrentUpdateConflict,
    IdentityNotFound, PersistFailed, ProvisioningError, UnexpectedProvisioningError
)
from .identifiers import AccountNumberAllocator
from .keys import KeyMaterial, PrivateKey, generate_key_material
from .logging_config import get_logger, log_action
from .profiles import IdentityProfile, ProfileRegistry
from .storage import StorageError, UniqueConstraintViolation


logger = get_logger("provisioning.orchestrator")


@dataclass(frozen=True)
class OnboardingResult:
    """
    Outcome of a successful provisioning call. The only object in the
    system that ever carries the plaintext private key.
    """
    identity_id: str
    account_number: str
    public_key: str
    wallet_address: str
    provisioned_at: datetime
    private_key: PrivateKey = field(repr=False)

    def public_fields(self) -> Dict[str, Any]:
        return {
            "identity_id": self.identity_id,
            "account_number": self.account_number,
            "public_key": self.public_key,
            "wallet_address": self.wallet_address,
            "provisioned_at": self.provisioned_at.isoformat(),
        }


class ProvisioningService:
    """
    Assigns account numbers and key pairs to registered identities
    """

    def __init__(
        self,
        registry: ProfileRegistry,
        allocator: Optional[AccountNumberAllocator] = None,
        audit_trail: Optional[AuditTrail] = None,
        key_generator: Callable[[], KeyMaterial] = generate_key_material,
        hasher: Callable[[Union[PrivateKey, str, bytes]], str] = commit
    ):
        self.registry = registry
        self.allocator = allocator or AccountNumberAllocator(registry)
        self.audit_trail = audit_trail
        self.key_generator = key_generator
        self.hasher = hasher

    def provision(self, identity_id: str) -> OnboardingResult:
        """
        Provision an identity exactly once.

        Args:
            identity_id: Handle from the authentication system

        Returns:
            OnboardingResult carrying the private key. It cannot be retrieved again.

        Raises:
            AlreadyProvisioned: identity already holds key material
            AllocationExhausted: no unique account number within the retry bound
            PersistFailed: storage failure or lost concurrent write (nothing written)
            UnexpectedProvisioningError: any other internal failure
        """
        log_action(logger, "info", "Starting provisioning",
                   user_id=identity_id, action="provision", resource="profile")

        profile = self._load_profile(identity_id)
        if profile.is_provisioned:
            log_action(logger, "info", "Identity already provisioned",
                       user_id=identity_id, action="provision", resource="profile")
            raise AlreadyProvisioned(identity_id)

        expected = {
            "provisioned": False,
            "account_number": profile.account_number,
            "public_key": profile.public_key,
        }
        return self._run(profile, expected, AuditEventType.PROFILE_PROVISIONED, "provision")

    def regenerate_for_recovery(
        self,
        identity_id: str,
        *,
        operator_id: str,
        reason: str
    ) -> OnboardingResult:
        """
        Operator escape hatch: replace an identity's account number, key pair
        and commitment, bypassing the already-provisioned guard.

        The previous private key becomes unverifiable. Callers must restrict
        this operation to privileged operators.

        Args:
            identity_id: Identity to regenerate
            operator_id: Operator performing the recovery (audited)
            reason: Why the recovery is needed (audited)
        """
        if not operator_id:
            raise ValueError("operator_id is required for regeneration")
        if not reason:
            raise ValueError("reason is required for regeneration")

        log_action(logger, "warning", "Starting operator-initiated regeneration",
                   user_id=operator_id, action="regenerate", resource="profile",
                   extra={"identity_id": identity_id, "reason": reason})

        profile = self._load_profile(identity_id)
        expected = {
            "provisioned": profile.provisioned,
            "private_key_commitment": profile.private_key_commitment,
        }
        return self._run(
            profile, expected, AuditEventType.PROFILE_REGENERATED, "regenerate",
            operator_id=operator_id, reason=reason
        )

    def _load_profile(self, identity_id: str) -> IdentityProfile:
        try:
            profile = self.registry.get(identity_id)
        except StorageError as e:
            raise PersistFailed(f"Failed to load profile {identity_id}", identity_id) from e
        if profile is None:
            raise IdentityNotFound(identity_id)
        return profile

    def _run(
        self,
        profile: IdentityProfile,
        expected: Dict[str, Any],
        event_type: AuditEventType,
        action: str,
        operator_id: Optional[str] = None,
        reason: Optional[str] = None
    ) -> OnboardingResult:
        identity_id = profile.identity_id
        try:
            result, commitment = self._commit_new_material(identity_id, expected, event_type)
        except ProvisioningError as e:
            self._record_failure(identity_id, action, e, operator_id)
            raise
        except StorageError as e:
            failure = PersistFailed(f"Failed to save provisioning data for {identity_id}", identity_id)
            self._record_failure(identity_id, action, failure, operator_id)
            raise failure from e
        except Exception as e:
            logger.exception(f"Unexpected error during {action} for {identity_id}")
            failure = UnexpectedProvisioningError(
                f"An unexpected error occurred during {action}", identity_id
            )
            self._record_failure(identity_id, action, failure, operator_id)
            raise failure from e

        log_action(logger, "info", f"{action.capitalize()} completed",
                   user_id=operator_id or identity_id, action=action, resource="profile",
                   extra={
                       "identity_id": identity_id,
                       "account_number": result.account_number,
                       "wallet_address": result.wallet_address,
                       "private_key_commitment": commitment,
                   })

        metadata = {
            "account_number": result.account_number,
            "public_key": result.public_key,
            "wallet_address": result.wallet_address,
            "private_key_commitment": commitment,
            "provisioned_at": result.provisioned_at,
        }
        if event_type is AuditEventType.PROFILE_REGENERATED:
            metadata["previous_account_number"] = profile.account_number
            metadata["previous_private_key_commitment"] = profile.private_key_commitment
            metadata["reason"] = reason
        self._audit(event_type, identity_id, metadata, operator_id or identity_id)

        return result

    def _commit_new_material(
        self,
        identity_id: str,
        expected: Dict[str, Any],
        event_type: AuditEventType
    ) -> tuple:
        """Allocate, generate, hash, then commit in one conditional write"""
        rejected: Set[str] = set()
        spent = 0  # draws across pre-check and commit-time collisions
        material: Optional[KeyMaterial] = None
        commitment: Optional[str] = None

        while True:
            account_number, attempts = self.allocator.allocate_counted(
                exclude=rejected, max_attempts=self.allocator.max_attempts - spent
            )
            spent += attempts

            if material is None:
                material = self.key_generator()
                commitment = self.hasher(material.private_key)

            provisioned_at = datetime.now(timezone.utc)
            changes = {
                "account_number": account_number,
                "public_key": material.public_key,
                "wallet_address": material.wallet_address,
                "private_key_commitment": commitment,
                "provisioned": True,
                "provisioned_at": provisioned_at.isoformat(),
            }

            try:
                committed = self.registry.conditional_update(identity_id, expected, changes)
            except UniqueConstraintViolation as e:
                if e.field != "account_number":
                    raise
                # The unique index caught a race the pre-check missed
                rejected.add(account_number)
                logger.warning(f"Account number taken at commit time for {identity_id}, reallocating")
                if spent >= self.allocator.max_attempts:
                    raise AllocationExhausted(self.allocator.max_attempts, identity_id)
                continue

            if not committed:
                raise self._lost_write_error(identity_id, event_type)

            result = OnboardingResult(
                identity_id=identity_id,
                account_number=account_number,
                public_key=material.public_key,
                wallet_address=material.wallet_address,
                provisioned_at=provisioned_at,
                private_key=material.private_key,
            )
            return result, commitment

    def _lost_write_error(self, identity_id: str, event_type: AuditEventType) -> ProvisioningError:
        """Classify a conditional write that matched no row"""
        current = self.registry.get(identity_id)
        if current is None:
            return IdentityNotFound(identity_id)
        if event_type is AuditEventType.PROFILE_PROVISIONED and current.is_provisioned:
            return AlreadyProvisioned(identity_id)
        return ConcurrentUpdateConflict(identity_id)

    def _record_failure(
        self,
        identity_id: str,
        action: str,
        error: ProvisioningError,
        operator_id: Optional[str]
    ) -> None:
        log_action(logger, "error", f"{action.capitalize()} failed: {error}",
                   user_id=operator_id or identity_id, action=action, resource="profile",
                   extra={"identity_id": identity_id, "error_code": error.code})
        self._audit(
            AuditEventType.PROVISIONING_FAILED, identity_id,
            {"action": action, "error_code": error.code, "error": str(error)},
            operator_id or identity_id
        )

    def _audit(
        self,
        event_type: AuditEventType,
        identity_id: str,
        metadata: Dict[str, Any],
        user_id: str
    ) -> None:
        if not self.audit_trail:
            return
        try:
            self.audit_trail.log_event(
                event_type=event_type,
                entity_type="profile",
                entity_id=identity_id,
                metadata=metadata,
                user_id=user_id
            )
        except Exception:
            # The profile write already happened (or failed on its own); the
            # one-time key must still reach the caller.
            logger.exception(f"Failed to write {event_type.value} audit event for {identity_id}")
