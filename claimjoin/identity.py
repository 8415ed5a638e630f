"""
ClaimJoin - Session Identity

Ephemeral secp256k1 keypair, regenerated once per ClaimJoin session.
The public key travels as base64 of the 33-byte compressed point.
"""

import base64

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

CURVE = ec.SECP256K1()


def public_key_to_base64(public_key: ec.EllipticCurvePublicKey) -> str:
    """Compressed point, base64 encoded."""
    return base64.b64encode(public_key.public_bytes(
        encoding=serialization.Encoding.X962,
        format=serialization.PublicFormat.CompressedPoint
    )).decode()


def base64_to_public_key(text: str) -> ec.EllipticCurvePublicKey:
    """Raises ValueError on bad base64 or a point not on the curve."""
    return ec.EllipticCurvePublicKey.from_encoded_point(CURVE, base64.b64decode(text))


class Identity:
    """
    Session keypair.

    Usage:
        identity = Identity.generate()
        pubkey = identity.public_key_b64

        # persist and restore
        secret = identity.to_bytes()
        restored = Identity.from_bytes(secret)
    """

    def __init__(self, private_key: ec.EllipticCurvePrivateKey):
        self.private_key = private_key
        self.public_key = private_key.public_key()
        self.public_key_b64 = public_key_to_base64(self.public_key)

    @classmethod
    def generate(cls) -> "Identity":
        return cls(ec.generate_private_key(CURVE))

    @classmethod
    def from_bytes(cls, secret: bytes) -> "Identity":
        """Restore from the 32-byte big-endian scalar."""
        return cls(ec.derive_private_key(int.from_bytes(secret, "big"), CURVE))

    def to_bytes(self) -> bytes:
        return self.private_key.private_numbers().private_value.to_bytes(32, "big")

    def __repr__(self) -> str:
        return f"Identity({self.public_key_b64})"
