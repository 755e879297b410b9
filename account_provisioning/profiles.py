"""
Identity Profile Module

The profile row owned by the persistence layer. Rows are created by the
external registration collaborator (via ProfileRegistry.register) with every
provisioning field empty, and mutated once by the provisioning orchestrator.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .audit import AuditTrail, AuditEventType
from .storage import StorageInterface, StorageRecord


PROFILES_TABLE = "profiles"


@dataclass
class IdentityProfile(StorageRecord):
    """
    Identity profile. ``id`` is the identity handle assigned by the
    authentication system.
    """
    account_number: Optional[str] = None
    public_key: Optional[str] = None
    wallet_address: Optional[str] = None
    private_key_commitment: Optional[str] = None
    provisioned: bool = False
    provisioned_at: Optional[datetime] = None

    @property
    def identity_id(self) -> str:
        return self.id

    @property
    def is_provisioned(self) -> bool:
        """Provisioned flag set, or account number and public key both present"""
        return self.provisioned or bool(self.account_number and self.public_key)

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['provisioned_at'] = self.provisioned_at.isoformat() if self.provisioned_at else None
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'IdentityProfile':
        data = dict(data)
        if isinstance(data.get('provisioned_at'), str):
            data['provisioned_at'] = datetime.fromisoformat(data['provisioned_at'])
        known = set(cls.__dataclass_fields__)
        return super().from_dict({k: v for k, v in data.items() if k in known})


class ProfileRegistry:
    """
    Persistence capability for identity profiles: get, conditional update
    and a storage-enforced unique constraint on account_number.
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: Optional[AuditTrail] = None,
        table_name: str = PROFILES_TABLE
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.table_name = table_name
        self.storage.ensure_unique_index(self.table_name, "account_number")

    def register(self, identity_id: str) -> IdentityProfile:
        """
        Create an unprovisioned profile for an identity. Registering an
        identity that already exists returns the stored profile untouched.
        """
        if not identity_id:
            raise ValueError("identity_id is required")

        now = datetime.now(timezone.utc)
        profile = IdentityProfile(id=identity_id, created_at=now, updated_at=now)
        if not self.storage.insert(self.table_name, identity_id, profile.to_dict()):
            return self.get(identity_id)

        if self.audit_trail:
            self.audit_trail.log_event(
                event_type=AuditEventType.PROFILE_REGISTERED,
                entity_type="profile",
                entity_id=identity_id,
                user_id=identity_id
            )
        return profile

    def get(self, identity_id: str) -> Optional[IdentityProfile]:
        """Load a profile, or None if the identity is unknown"""
        data = self.storage.load(self.table_name, identity_id)
        if data:
            return IdentityProfile.from_dict(data)
        return None

    def exists(self, identity_id: str) -> bool:
        return self.storage.exists(self.table_name, identity_id)

    def account_number_in_use(self, account_number: str) -> bool:
        return bool(self.storage.find(self.table_name, {"account_number": account_number}))

    def conditional_update(
        self,
        identity_id: str,
        expected: Dict[str, Any],
        changes: Dict[str, Any]
    ) -> bool:
        """
        Write all changes in one update if the profile still matches expected.

        Raises:
            UniqueConstraintViolation: if the account number is already taken
            StorageError: on any other storage failure
        """
        changes = dict(changes)
        changes['updated_at'] = datetime.now(timezone.utc).isoformat()
        return self.storage.conditional_update(self.table_name, identity_id, expected, changes)
