"""
Commitment Hasher Module

Keccak-256 over the UTF-8 bytes of the 0x-prefixed hex private key. The
commitment is the only durable trace of a private key.
"""

import hmac
from typing import Union

from eth_utils import keccak

from .keys import PrivateKey


def _material(private_key: Union[PrivateKey, str, bytes]) -> bytes:
    if isinstance(private_key, PrivateKey):
        return private_key.reveal().encode('utf-8')
    if isinstance(private_key, str):
        return private_key.encode('utf-8')
    if isinstance(private_key, (bytes, bytearray)):
        return bytes(private_key)
    raise TypeError("Private key must be PrivateKey, str or bytes")


def commit(private_key: Union[PrivateKey, str, bytes]) -> str:
    """Return the 0x-prefixed hex Keccak-256 commitment of a private key"""
    return "0x" + keccak(_material(private_key)).hex()


def verify_commitment(private_key: Union[PrivateKey, str, bytes], commitment: str) -> bool:
    """Check a private key against a stored commitment in constant time"""
    if not isinstance(commitment, str):
        return False
    return hmac.compare_digest(
        commit(private_key).encode('utf-8'), commitment.lower().encode('utf-8')
    )
