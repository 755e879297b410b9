"""
Status Query Module

Read-only projections of the identity profile. Never exposes the private
key commitment or any key material beyond the public key and address.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from .profiles import ProfileRegistry


class ProvisioningStatus(Enum):
    """Three-valued provisioning state of an identity"""
    NOT_FOUND = "not_found"      # No profile row for this identity
    PENDING = "pending"          # Registered, not yet provisioned
    PROVISIONED = "provisioned"  # Account number and key pair assigned


@dataclass(frozen=True)
class PublicProfile:
    """Public fields of a provisioned identity"""
    identity_id: str
    account_number: str
    public_key: str
    wallet_address: str
    provisioned_at: Optional[datetime]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "identity_id": self.identity_id,
            "account_number": self.account_number,
            "public_key": self.public_key,
            "wallet_address": self.wallet_address,
            "provisioned_at": self.provisioned_at.isoformat() if self.provisioned_at else None,
        }


class StatusQuery:
    """Answers "is this identity provisioned?" without side effects"""

    def __init__(self, registry: ProfileRegistry):
        self.registry = registry

    def status(self, identity_id: str) -> ProvisioningStatus:
        profile = self.registry.get(identity_id)
        if profile is None:
            return ProvisioningStatus.NOT_FOUND
        if profile.is_provisioned:
            return ProvisioningStatus.PROVISIONED
        return ProvisioningStatus.PENDING

    def is_provisioned(self, identity_id: str) -> bool:
        """False both for unknown and for unprovisioned identities; see status()"""
        return self.status(identity_id) is ProvisioningStatus.PROVISIONED

    def public_data(self, identity_id: str) -> Optional[PublicProfile]:
        """Public fields of a provisioned identity, or None"""
        profile = self.registry.get(identity_id)
        if profile is None or not profile.is_provisioned:
            return None
        return PublicProfile(
            identity_id=profile.identity_id,
            account_number=profile.account_number,
            public_key=profile.public_key,
            wallet_address=profile.wallet_address,
            provisioned_at=profile.provisioned_at,
        )
