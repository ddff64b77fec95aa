"""Shared fixtures for APK registry tests."""

from dataclasses import dataclass
from typing import Optional

import pytest

from apk_registry.access import CoordinatorGate
from apk_registry.block_clock import ManualBlockClock
from apk_registry.bn254 import G1Point, GENERATOR, multiply, hash_g1_point, generate_bls_keypair
from apk_registry.crypto_utils import generate_keypair, sign_message, derive_operator_address
from apk_registry.pubkey_compendium import PubkeyCompendium, pubkey_registration_message
from apk_registry.registry import BLSApkRegistry

COORDINATOR = "0x" + "c0" * 20


@dataclass
class OperatorKeys:
    address: str
    ecdsa_private_key: str
    ecdsa_public_key: str
    bls_secret: int
    pubkey: G1Point

    @property
    def pubkey_hash(self) -> str:
        return hash_g1_point(self.pubkey)


def make_operator(bls_secret: Optional[int] = None) -> OperatorKeys:
    """Fixed BLS secrets keep scenarios reproducible; None draws a fresh keypair"""
    private_key, public_key = generate_keypair()
    if bls_secret is None:
        bls_secret, pubkey = generate_bls_keypair()
    else:
        pubkey = multiply(GENERATOR, bls_secret)
    return OperatorKeys(
        address=derive_operator_address(public_key),
        ecdsa_private_key=private_key,
        ecdsa_public_key=public_key,
        bls_secret=bls_secret,
        pubkey=pubkey,
    )


def register_in_compendium(compendium: PubkeyCompendium, operator: OperatorKeys) -> str:
    message = pubkey_registration_message(operator.address, operator.pubkey_hash, compendium.chain_id)
    signature = sign_message(message, operator.ecdsa_private_key)
    return compendium.register_bls_public_key(
        operator.address, operator.pubkey, operator.ecdsa_public_key, signature
    )


@pytest.fixture
def clock():
    return ManualBlockClock(0)


@pytest.fixture
def compendium():
    return PubkeyCompendium()


@pytest.fixture
def registry(compendium, clock):
    return BLSApkRegistry(
        gate=CoordinatorGate(COORDINATOR),
        compendium=compendium,
        clock=clock,
    )


@pytest.fixture
def operators(compendium):
    """Three operators with pubkeys already bound in the compendium"""
    keys = [make_operator(secret) for secret in (11, 23, 37)]
    for operator in keys:
        register_in_compendium(compendium, operator)
    return keys
