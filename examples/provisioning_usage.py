#!/usr/bin/env python3
"""
Example: Provisioning an identity end to end

Registers an identity, provisions it once, shows that a second call is
refused, and verifies the stored commitment against the one-time key.
"""

import os
import sys

# Add the provisioning package to the path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from account_provisioning.audit import AuditTrail
from account_provisioning.commitment import verify_commitment
from account_provisioning.config import ProvisioningConfig
from account_provisioning.errors import AlreadyProvisioned
from account_provisioning.profiles import ProfileRegistry
from account_provisioning.provisioning import ProvisioningService
from account_provisioning.status import StatusQuery
from account_provisioning.storage import create_storage


def main():
    print("🔑 Account Provisioning - Usage Example")
    print("=" * 60)

    print("\n1. 🔧 Configuration Setup")
    config = ProvisioningConfig()
    database_url = os.environ.get("EXAMPLE_DATABASE_URL", "memory://")
    print(f"   Database URL: {database_url}")
    print(f"   Allocation attempts: {config.allocation_max_attempts}")

    storage = create_storage(database_url, timeout=config.database_timeout)
    audit_trail = AuditTrail(storage)
    registry = ProfileRegistry(storage, audit_trail)
    service = ProvisioningService(registry, audit_trail=audit_trail)
    status_query = StatusQuery(registry)

    print("\n2. 👤 Registering identity")
    registry.register("user-001")
    print(f"   Status: {status_query.status('user-001').value}")

    print("\n3. 🏦 Provisioning")
    result = service.provision("user-001")
    print(f"   Account number: {result.account_number}")
    print(f"   Wallet address: {result.wallet_address}")
    print(f"   Private key:    {result.private_key.reveal()}  <- shown once")

    print("\n4. 🔁 Second provisioning attempt")
    try:
        service.provision("user-001")
    except AlreadyProvisioned as e:
        print(f"   Refused: {e}")

    print("\n5. ✅ Commitment check")
    stored = registry.get("user-001")
    print(f"   Commitment matches: {verify_commitment(result.private_key, stored.private_key_commitment)}")
    print(f"   Audit chain valid: {audit_trail.verify_integrity()['valid']}")

    storage.close()


if __name__ == "__main__":
    main()
