"""
Tests for key material generation, address derivation and the one-time
PrivateKey secret type
"""

import copy
import json
import pickle
import pytest
from unittest.mock import patch

from eth_account import Account
from eth_keys import keys as eth_keys

from account_provisioning.errors import UnexpectedProvisioningError
from account_provisioning.keys import (
    KeyMaterial, PrivateKey, derive_address, generate_key_material, is_valid_wallet_address
)


class TestGenerateKeyMaterial:
    """Test secp256k1 key pair generation"""

    def test_formats(self):
        material = generate_key_material()

        assert material.public_key.startswith("0x04")
        assert len(material.public_key) == 2 + 130
        assert len(material.private_key.reveal()) == 2 + 64
        assert is_valid_wallet_address(material.wallet_address)

    def test_matches_reference_derivation(self):
        """Public key and address agree with eth-keys / eth-account"""
        material = generate_key_material()
        secret = material.private_key.reveal()

        reference = eth_keys.PrivateKey(bytes.fromhex(secret[2:]))
        assert material.public_key == "0x04" + reference.public_key.to_hex()[2:]
        assert material.wallet_address == Account.from_key(secret).address

    def test_keys_are_fresh(self):
        secrets_seen = {generate_key_material().private_key.reveal() for _ in range(20)}
        assert len(secrets_seen) == 20

    def test_backend_failure_is_fatal(self):
        with patch("account_provisioning.keys.ec.generate_private_key", side_effect=OSError("no entropy")):
            with pytest.raises(UnexpectedProvisioningError):
                generate_key_material()


class TestDeriveAddress:
    """Test address derivation from public keys"""

    def test_known_vector(self):
        # Private key 1: public key is the secp256k1 generator point
        secret = "0x" + "00" * 31 + "01"
        public = eth_keys.PrivateKey(bytes.fromhex(secret[2:])).public_key

        assert derive_address(public.to_bytes()) == "0x7E5F4552091A69125d5DfCb7b8C2659029395Bdf"
        assert derive_address("0x04" + public.to_hex()[2:]) == "0x7E5F4552091A69125d5DfCb7b8C2659029395Bdf"

    def test_rejects_compressed_key(self):
        with pytest.raises(ValueError):
            derive_address(b"\x02" + b"\x11" * 32)

    def test_wallet_address_validation(self):
        assert is_valid_wallet_address("0x7E5F4552091A69125d5DfCb7b8C2659029395Bdf")
        assert is_valid_wallet_address("0x7e5f4552091a69125d5dfcb7b8c2659029395bdf")
        assert not is_valid_wallet_address("0x7E5F4552091A69125d5DfCb7b8C2659029395BDF")
        assert is_valid_wallet_address("0x7E5F4552091A69125D5DFCB7B8C2659029395BDF")
        assert not is_valid_wallet_address("0x7e5f4552091a69125d5dfcb7b8c2659029395bdG")
        assert not is_valid_wallet_address("0x1234")
        assert not is_valid_wallet_address(None)


class TestPrivateKey:
    """The one-time secret cannot leak through common channels"""

    SECRET = "0x" + "ab" * 32

    def test_reveal(self):
        assert PrivateKey(self.SECRET).reveal() == self.SECRET

    def test_repr_and_str_are_redacted(self):
        key = PrivateKey(self.SECRET)
        assert self.SECRET not in repr(key)
        assert self.SECRET not in str(key)
        assert self.SECRET not in f"{key}"

    def test_key_material_repr_hides_secret(self):
        material = generate_key_material()
        assert material.private_key.reveal() not in repr(material)

    def test_cannot_be_pickled_or_copied(self):
        key = PrivateKey(self.SECRET)
        with pytest.raises(TypeError):
            pickle.dumps(key)
        with pytest.raises(TypeError):
            copy.copy(key)
        with pytest.raises(TypeError):
            copy.deepcopy(key)

    def test_cannot_be_json_encoded(self):
        with pytest.raises(TypeError):
            json.dumps({"private_key": PrivateKey(self.SECRET)})

    def test_has_no_instance_dict(self):
        assert not hasattr(PrivateKey(self.SECRET), "__dict__")

    def test_equality(self):
        assert PrivateKey(self.SECRET) == PrivateKey(self.SECRET)
        assert PrivateKey(self.SECRET) != PrivateKey("0x" + "cd" * 32)

    @pytest.mark.parametrize("value", ["ab" * 32, "0x" + "AB" * 32, "0x" + "ab" * 31, None])
    def test_rejects_malformed_values(self, value):
        with pytest.raises(ValueError):
            PrivateKey(value)
