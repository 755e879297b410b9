"""
Account Provisioning Core

One-time assignment of an immutable 12-digit account number and an
Ethereum-compatible key pair to a registered identity. The private key is
disclosed exactly once; only its Keccak-256 commitment is ever stored.
"""

__version__ = "1.0.0"
