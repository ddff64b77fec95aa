"""
Cryptographic utilities for operator identities

Simple wrapper functions for secp256k1 key generation, signing and
operator address derivation.
"""

import hashlib
from ecdsa import SigningKey, VerifyingKey, SECP256k1, BadSignatureError
from ecdsa.errors import MalformedPointError

from apk_registry.bn254 import keccak256


def generate_keypair():
    """
    Generate a new ECDSA keypair.

    Returns:
        tuple: (private_key_hex, public_key_hex)
    """
    sk = SigningKey.generate(curve=SECP256k1)
    vk = sk.get_verifying_key()

    private_key = sk.to_string().hex()
    public_key = vk.to_string().hex()

    return private_key, public_key


def public_key_from_private(private_key_hex: str) -> str:
    sk = SigningKey.from_string(bytes.fromhex(private_key_hex), curve=SECP256k1)
    return sk.get_verifying_key().to_string().hex()


def sign_message(message: bytes, private_key_hex: str) -> str:
    """
    Sign a message with a private key.

    Args:
        message: Message to sign (bytes)
        private_key_hex: Private key in hex format

    Returns:
        str: Signature in hex format
    """
    sk = SigningKey.from_string(bytes.fromhex(private_key_hex), curve=SECP256k1)
    signature = sk.sign_deterministic(message, hashfunc=hashlib.sha256)
    return signature.hex()


def verify_signature(message: bytes, signature_hex: str, public_key_hex: str) -> bool:
    """
    Verify a signature.

    Args:
        message: Original message (bytes)
        signature_hex: Signature in hex format
        public_key_hex: Public key in hex format

    Returns:
        bool: True if signature is valid
    """
    try:
        vk = VerifyingKey.from_string(bytes.fromhex(public_key_hex), curve=SECP256k1)
        return vk.verify(bytes.fromhex(signature_hex), message, hashfunc=hashlib.sha256)
    except (BadSignatureError, MalformedPointError, ValueError):
        return False


def derive_operator_address(public_key_hex: str) -> str:
    """
    Derive an operator address from a secp256k1 public key.

    Last 20 bytes of keccak256 over the 64-byte uncompressed key (x || y).

    Args:
        public_key_hex: Public key in hex format (64 bytes, no 0x04 prefix)

    Returns:
        str: Operator address (0x-prefixed, lowercase)
    """
    digest = keccak256(bytes.fromhex(public_key_hex))
    return "0x" + digest[-20:].hex()
