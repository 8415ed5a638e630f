"""
ClaimJoin - ECIES

Hybrid encryption between session keys, so that coordination can be
relayed through peers that must not read it.

Wire format:
    compressed ephemeral pubkey (33) || nonce (12) || ciphertext + tag
"""

import hashlib
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.ciphers.aead import ChaCha20Poly1305
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from .identity import CURVE, Identity, base64_to_public_key

POINT_SIZE = 33
NONCE_SIZE = 12
KEY_SIZE = 32
TAG_SIZE = 16


class EciesError(Exception):
    """Encryption or decryption failed."""


def _derive_key(private_key: ec.EllipticCurvePrivateKey,
                public_key: ec.EllipticCurvePublicKey) -> bytes:
    shared_secret = hashlib.sha256(private_key.exchange(ec.ECDH(), public_key)).digest()
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_SIZE,
        salt=None,
        info=None,
    )
    return hkdf.derive(shared_secret)


def encrypt(receiver_pubkey: str, plaintext: bytes) -> bytes:
    """
    Encrypt for a base64 session public key.

    Args:
        receiver_pubkey: Receiver's compressed public key, base64
        plaintext: Message bytes

    Returns:
        ephemeral pubkey || nonce || ciphertext
    """
    try:
        public_key = base64_to_public_key(receiver_pubkey)
    except ValueError as e:
        raise EciesError(f"Invalid receiver key: {e}") from e

    ephemeral = ec.generate_private_key(CURVE)
    cipher = ChaCha20Poly1305(_derive_key(ephemeral, public_key))
    nonce = os.urandom(NONCE_SIZE)

    ephemeral_bytes = ephemeral.public_key().public_bytes(
        encoding=serialization.Encoding.X962,
        format=serialization.PublicFormat.CompressedPoint
    )
    return ephemeral_bytes + nonce + cipher.encrypt(nonce, plaintext, None)


def decrypt(identity: Identity, ciphertext: bytes) -> bytes:
    """
    Decrypt with this node's session identity.

    Raises:
        EciesError: undersized input, invalid point or failed authentication
    """
    if len(ciphertext) < POINT_SIZE + NONCE_SIZE + TAG_SIZE:
        raise EciesError(f"Ciphertext too short: {len(ciphertext)} bytes")

    try:
        ephemeral = ec.EllipticCurvePublicKey.from_encoded_point(CURVE, ciphertext[:POINT_SIZE])
    except ValueError as e:
        raise EciesError(f"Invalid ephemeral key: {e}") from e

    nonce = ciphertext[POINT_SIZE:POINT_SIZE + NONCE_SIZE]
    cipher = ChaCha20Poly1305(_derive_key(identity.private_key, ephemeral))
    try:
        return cipher.decrypt(nonce, ciphertext[POINT_SIZE + NONCE_SIZE:], None)
    except InvalidTag as e:
        raise EciesError("Authentication failed") from e
