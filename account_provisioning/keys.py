"""
Key Material Generator Module

Generates secp256k1 key pairs with the cryptography library and derives
Ethereum-style addresses (EIP-55 checksummed last 20 bytes of the Keccak-256
of the public key).

The private key is wrapped in PrivateKey, a one-time secret that cannot be
printed, pickled, copied or JSON-encoded. The only way to read it is reveal().
"""

import hmac
import re
from dataclasses import dataclass, field
from typing import Union

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from eth_utils import is_checksum_address, is_hex_address, keccak, to_checksum_address

from .errors import UnexpectedProvisioningError


_PRIVATE_KEY_PATTERN = re.compile(r'0x[0-9a-f]{64}')
PRIVATE_KEY_BYTES = 32
PUBLIC_KEY_BYTES = 65  # SEC1 uncompressed point: 0x04 || X || Y


class PrivateKey:
    """
    Plaintext private key held only for the lifetime of one provisioning call.

    Has no storage or serialization path: repr/str are redacted and
    pickling or copying raises TypeError.
    """

    __slots__ = ("_value",)

    def __init__(self, value: str):
        if not isinstance(value, str) or not _PRIVATE_KEY_PATTERN.fullmatch(value):
            raise ValueError("Private key must be 0x-prefixed lowercase hex of 32 bytes")
        self._value = value

    def reveal(self) -> str:
        """Return the 0x-prefixed hex private key"""
        return self._value

    def __repr__(self) -> str:
        return "PrivateKey('<redacted>')"

    __str__ = __repr__

    def __eq__(self, other) -> bool:
        if not isinstance(other, PrivateKey):
            return NotImplemented
        return hmac.compare_digest(self._value, other._value)

    __hash__ = None

    def __reduce_ex__(self, protocol):
        raise TypeError("PrivateKey cannot be serialized or copied")


@dataclass(frozen=True)
class KeyMaterial:
    """Freshly generated key pair and derived address"""
    public_key: str  # 0x04-prefixed uncompressed point, hex
    wallet_address: str  # EIP-55 checksummed
    private_key: PrivateKey = field(repr=False)


def _public_key_bytes(public_key: Union[str, bytes]) -> bytes:
    if isinstance(public_key, str):
        public_key = bytes.fromhex(public_key[2:] if public_key.startswith("0x") else public_key)
    return public_key


def derive_address(public_key: Union[str, bytes]) -> str:
    """
    Derive the checksummed address of a secp256k1 public key.

    Accepts the 65-byte uncompressed point (leading 0x04) or the bare
    64-byte X || Y body, as bytes or hex.
    """
    raw = _public_key_bytes(public_key)
    if len(raw) == PUBLIC_KEY_BYTES and raw[0] == 0x04:
        raw = raw[1:]
    if len(raw) != PUBLIC_KEY_BYTES - 1:
        raise ValueError("Public key must be an uncompressed secp256k1 point")
    return to_checksum_address(keccak(raw)[-20:])


def is_valid_wallet_address(value: object) -> bool:
    """Check address format (20-byte hex; checksum enforced when mixed-case)"""
    if not isinstance(value, str) or not is_hex_address(value):
        return False
    body = value[2:] if value[:2].lower() == "0x" else value
    if body == body.lower() or body == body.upper():
        return True
    return is_checksum_address(value)


def generate_key_material() -> KeyMaterial:
    """
    Generate a secp256k1 key pair from the OS CSPRNG.

    Raises:
        UnexpectedProvisioningError: if the backend cannot produce a key
    """
    try:
        signing_key = ec.generate_private_key(ec.SECP256K1())
        secret = signing_key.private_numbers().private_value.to_bytes(PRIVATE_KEY_BYTES, "big")
        point = signing_key.public_key().public_bytes(
            encoding=serialization.Encoding.X962,
            format=serialization.PublicFormat.UncompressedPoint
        )
    except Exception as e:
        raise UnexpectedProvisioningError("Failed to generate cryptographic keys") from e

    return KeyMaterial(
        public_key="0x" + point.hex(),
        wallet_address=derive_address(point),
        private_key=PrivateKey("0x" + secret.hex())
    )
