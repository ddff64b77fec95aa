"""
BN254 PUBKEY COMPENDIUM

Binds each operator to exactly one BN254 G1 public key and answers the
ownership question the registry asks on every mutation:
"which operator registered the pubkey with this hash?"

REGISTRATION PROOF:
The operator signs the registration message (domain, chain id, operator
address, pubkey hash) with its secp256k1 identity key. The operator address
must be the one derived from that key, so only the holder of the identity key
can claim a pubkey for it.

BINDING RULES:
- The zero pubkey (identity point) can never be registered
- An operator registers at most one pubkey
- A pubkey belongs to at most one operator
- Bindings are permanent
"""

from typing import Dict, Optional

from apk_registry import config
from apk_registry.bn254 import G1Point, hash_g1_point, keccak256
from apk_registry.crypto_utils import derive_operator_address, verify_signature
from apk_registry.errors import (
    InvalidContribution, PubkeyAlreadyRegistered, InvalidRegistrationSignature
)


def pubkey_registration_message(operator: str, pubkey_hash: str,
                                chain_id: str = config.CHAIN_ID) -> bytes:
    """Message an operator signs to claim a pubkey (32-byte keccak digest)"""
    payload = "|".join([
        config.PUBKEY_REGISTRATION_DOMAIN,
        chain_id,
        operator.lower(),
        pubkey_hash,
    ])
    return keccak256(payload.encode())


class PubkeyCompendium:
    """
    In-memory operator <-> pubkey bindings.

    Serves as the ownership oracle for BLSApkRegistry through
    get_operator_from_pubkey_hash().
    """

    def __init__(self, chain_id: str = config.CHAIN_ID):
        self.chain_id = chain_id

        # {pubkey_hash: operator_address}
        self.pubkey_hash_to_operator: Dict[str, str] = {}
        # {operator_address: pubkey_hash}
        self.operator_to_pubkey_hash: Dict[str, str] = {}
        # {pubkey_hash: G1 point}
        self.pubkeys: Dict[str, G1Point] = {}

    def register_bls_public_key(self, operator: str, pubkey: G1Point,
                                ecdsa_public_key: str, signature: str) -> str:
        """
        Bind a BN254 pubkey to an operator.

        Args:
            operator: Operator address claiming the pubkey
            pubkey: BN254 G1 public key
            ecdsa_public_key: Operator's secp256k1 public key (hex)
            signature: Signature over pubkey_registration_message() (hex)

        Returns:
            str: Hash of the registered pubkey
        """
        operator = operator.lower()
        pubkey_hash = hash_g1_point(pubkey)

        if pubkey_hash == config.ZERO_PK_HASH:
            raise InvalidContribution("Cannot register the zero pubkey")
        if operator in self.operator_to_pubkey_hash:
            raise PubkeyAlreadyRegistered(f"Operator {operator} already registered a pubkey")
        if pubkey_hash in self.pubkey_hash_to_operator:
            raise PubkeyAlreadyRegistered(f"Pubkey {pubkey_hash} is already registered")

        if derive_operator_address(ecdsa_public_key) != operator:
            raise InvalidRegistrationSignature(
                f"ECDSA key does not belong to operator {operator}"
            )
        message = pubkey_registration_message(operator, pubkey_hash, self.chain_id)
        if not verify_signature(message, signature, ecdsa_public_key):
            raise InvalidRegistrationSignature(
                f"Registration signature for operator {operator} did not verify"
            )

        self._bind(operator, pubkey_hash, pubkey)
        return pubkey_hash

    def _bind(self, operator: str, pubkey_hash: str, pubkey: G1Point):
        self.pubkey_hash_to_operator[pubkey_hash] = operator
        self.operator_to_pubkey_hash[operator] = pubkey_hash
        self.pubkeys[pubkey_hash] = pubkey

    def restore_binding(self, operator: str, pubkey: G1Point) -> str:
        """Re-insert a binding loaded from storage (proof was checked at registration)"""
        pubkey_hash = hash_g1_point(pubkey)
        self._bind(operator.lower(), pubkey_hash, pubkey)
        return pubkey_hash

    def get_operator_from_pubkey_hash(self, pubkey_hash: str) -> Optional[str]:
        return self.pubkey_hash_to_operator.get(pubkey_hash.lower())

    def get_pubkey_hash(self, operator: str) -> Optional[str]:
        return self.operator_to_pubkey_hash.get(operator.lower())

    def get_pubkey(self, operator: str) -> G1Point:
        pubkey_hash = self.get_pubkey_hash(operator)
        if pubkey_hash is None:
            return None
        return self.pubkeys[pubkey_hash]

    def __len__(self) -> int:
        return len(self.pubkey_hash_to_operator)
