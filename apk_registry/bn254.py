"""
BN254 G1 point algebra for aggregate public keys.

Thin wrapper over py_ecc.bn128 so the rest of the registry only sees the
operations it needs: addition, negation and the canonical keccak-256 hash.

Encoding conventions (shared with on-chain verifiers):
- The group identity (point at infinity) is encoded as (0, 0)
- hash_g1_point = keccak256(x || y), each coordinate as a 32-byte big-endian word
"""

import secrets
from typing import Optional, Tuple

from Crypto.Hash import keccak
from py_ecc.bn128 import (
    FQ, G1, Z1,
    add as _add, neg as _neg, multiply as _multiply, eq as _eq,
    is_on_curve, b, curve_order, field_modulus,
)

from apk_registry.errors import InvalidPoint

# None is the identity in py_ecc
G1Point = Optional[Tuple[FQ, FQ]]

IDENTITY: G1Point = Z1
GENERATOR: G1Point = G1


def keccak256(data: bytes) -> bytes:
    return keccak.new(digest_bits=256, data=data).digest()


def add(a: G1Point, b_: G1Point) -> G1Point:
    return _add(a, b_)


def negate(point: G1Point) -> G1Point:
    return _neg(point)


def multiply(point: G1Point, scalar: int) -> G1Point:
    return _multiply(point, scalar % curve_order)


def points_equal(a: G1Point, b_: G1Point) -> bool:
    if a is None or b_ is None:
        return a is None and b_ is None
    return _eq(a, b_)


def sum_points(points) -> G1Point:
    """Aggregate an iterable of G1 points; the empty sum is the identity."""
    total = IDENTITY
    for point in points:
        total = _add(total, point)
    return total


def g1_to_ints(point: G1Point) -> Tuple[int, int]:
    if point is None:
        return 0, 0
    x, y = point
    return x.n, y.n


def g1_from_ints(x: int, y: int) -> G1Point:
    """
    Build a G1 point from affine coordinates.

    (0, 0) decodes to the identity. Raises InvalidPoint if either coordinate
    is outside the base field or the point is not on the curve.
    """
    if x == 0 and y == 0:
        return IDENTITY
    if not (0 <= x < field_modulus and 0 <= y < field_modulus):
        raise InvalidPoint(f"Coordinate out of field range: ({x}, {y})")
    point = (FQ(x), FQ(y))
    if not is_on_curve(point, b):
        raise InvalidPoint(f"Point ({x}, {y}) is not on the BN254 G1 curve")
    return point


def encode_g1_point(point: G1Point) -> bytes:
    x, y = g1_to_ints(point)
    return x.to_bytes(32, 'big') + y.to_bytes(32, 'big')


def hash_g1_point(point: G1Point) -> str:
    """Canonical pubkey hash: 0x-prefixed hex of keccak256(x || y)"""
    return "0x" + keccak256(encode_g1_point(point)).hex()


def g1_to_dict(point: G1Point) -> dict:
    x, y = g1_to_ints(point)
    return {'x': hex(x), 'y': hex(y)}


def g1_from_dict(data: dict) -> G1Point:
    return g1_from_ints(int(data['x'], 16), int(data['y'], 16))


def generate_bls_keypair() -> Tuple[int, G1Point]:
    """
    Generate a BN254 secret key and its G1 public key.

    Returns:
        tuple: (secret_key, pubkey_g1)
    """
    secret_key = secrets.randbelow(curve_order - 1) + 1
    return secret_key, _multiply(G1, secret_key)
