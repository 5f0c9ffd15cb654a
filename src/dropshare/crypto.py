"""
Dropshare - Cryptographic primitives for peer sessions.

Created by orpheus497

This module implements the building blocks of a Dropshare session:
- secp256k1 key pairs, one for key agreement and one for signing
- ECDH shared secret expanded with HKDF-SHA256 into a 256-bit session key
- AES-256-GCM chunk encryption with a fresh random 96-bit IV per call
- 32-byte random challenges
- ECDSA challenge signatures in 64-byte compact (r || s) form

All functions are stateless. Key material is passed around as raw bytes:
32-byte private scalars and 33-byte compressed public points.

All cryptographic operations use the cryptography library (Apache 2.0/BSD License).
"""

import hashlib
import os
import secrets
import uuid
from dataclasses import dataclass
from typing import Tuple

from cryptography.exceptions import InvalidSignature, InvalidTag
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import (
    Prehashed,
    decode_dss_signature,
    encode_dss_signature,
)
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from .constants import (
    CHALLENGE_SIZE,
    HKDF_INFO,
    IV_SIZE,
    KEY_SIZE,
    PRIVATE_KEY_SIZE,
    PUBLIC_KEY_SIZE,
    SIGNATURE_SIZE,
)
from .errors import (
    AuthenticationFailure,
    CryptoError,
    CryptoInitError,
    DecryptionError,
    EncryptionError,
    ErrorCode,
    ProtocolError,
)

# Order of the secp256k1 group, used to normalise signatures to low-S form
SECP256K1_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141


@dataclass(frozen=True)
class KeyPair:
    """
    An ephemeral secp256k1 key pair.

    Generated fresh for every local session and never persisted.

    Attributes:
        private_key: 32-byte big-endian private scalar
        public_key: 33-byte compressed public point
    """

    private_key: bytes
    public_key: bytes

    def __repr__(self) -> str:
        return f"KeyPair(public_key={self.public_key.hex()})"


def _generate_pair() -> KeyPair:
    try:
        private = ec.generate_private_key(ec.SECP256K1())
    except (NotImplementedError, OSError, ValueError) as e:
        # No usable entropy source or curve support in the backend
        raise CryptoInitError(
            ErrorCode.E104_KEY_GENERATION_FAILED,
            f"Key generation failed: {e}",
            {"error": str(e)},
        )

    private_bytes = private.private_numbers().private_value.to_bytes(PRIVATE_KEY_SIZE, "big")
    public_bytes = private.public_key().public_bytes(
        encoding=serialization.Encoding.X962,
        format=serialization.PublicFormat.CompressedPoint,
    )
    return KeyPair(private_key=private_bytes, public_key=public_bytes)


def generate_key_agreement_pair() -> KeyPair:
    """Generate a fresh secp256k1 key pair for ECDH key agreement."""
    return _generate_pair()


def generate_signing_pair() -> KeyPair:
    """Generate a fresh secp256k1 key pair for challenge signatures."""
    return _generate_pair()


def load_private_key(private_bytes: bytes) -> ec.EllipticCurvePrivateKey:
    """
    Load a 32-byte private scalar.

    Raises:
        CryptoError: If the scalar is not a valid secp256k1 private key
    """
    if len(private_bytes) != PRIVATE_KEY_SIZE:
        raise CryptoError(
            ErrorCode.E103_INVALID_KEY,
            f"Private key must be {PRIVATE_KEY_SIZE} bytes",
            {"length": len(private_bytes)},
        )
    try:
        return ec.derive_private_key(int.from_bytes(private_bytes, "big"), ec.SECP256K1())
    except ValueError as e:
        raise CryptoError(ErrorCode.E103_INVALID_KEY, f"Invalid private key: {e}")


def load_public_key(public_bytes: bytes) -> ec.EllipticCurvePublicKey:
    """
    Load a compressed (or uncompressed) secp256k1 public point.

    Raises:
        CryptoError: If the bytes do not encode a point on the curve
    """
    try:
        return ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256K1(), bytes(public_bytes))
    except (ValueError, TypeError) as e:
        raise CryptoError(
            ErrorCode.E103_INVALID_KEY,
            f"Invalid public key: {e}",
            {"length": len(public_bytes)},
        )


def validate_public_key(public_bytes: bytes) -> bytes:
    """
    Check that a peer-supplied public key is a compressed curve point.

    Returns:
        The key bytes unchanged

    Raises:
        CryptoError: If the key is malformed
    """
    if len(public_bytes) != PUBLIC_KEY_SIZE:
        raise CryptoError(
            ErrorCode.E103_INVALID_KEY,
            f"Public key must be {PUBLIC_KEY_SIZE} bytes",
            {"length": len(public_bytes)},
        )
    load_public_key(public_bytes)
    return public_bytes


def derive_shared_key(local_private: bytes, remote_public: bytes) -> bytes:
    """
    Derive the 256-bit session key shared with a peer.

    The ECDH shared secret (x coordinate of the shared point) is expanded
    with HKDF-SHA256, no salt and the fixed application info string.
    Both peers derive byte-identical keys whichever side initiated.

    Raises:
        CryptoError: If either key is malformed
    """
    private = load_private_key(local_private)
    public = load_public_key(remote_public)

    try:
        shared_secret = private.exchange(ec.ECDH(), public)
    except ValueError as e:
        raise CryptoError(ErrorCode.E108_KEY_DERIVATION_FAILED, f"Key agreement failed: {e}")

    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_SIZE,
        salt=None,
        info=HKDF_INFO,
    )
    return hkdf.derive(shared_secret)


def encrypt_chunk(plaintext: bytes, key: bytes) -> Tuple[bytes, bytes]:
    """
    Encrypt one chunk with AES-256-GCM.

    A new random 96-bit IV is drawn for every call; uniqueness per key
    relies on the negligible collision probability of random IVs.

    Returns:
        (ciphertext with appended 16-byte tag, iv)

    Raises:
        EncryptionError: If the key is invalid or encryption fails
    """
    if len(key) != KEY_SIZE:
        raise EncryptionError(
            ErrorCode.E103_INVALID_KEY,
            f"Encryption key must be {KEY_SIZE} bytes",
            {"length": len(key)},
        )

    try:
        iv = os.urandom(IV_SIZE)
        ciphertext = AESGCM(key).encrypt(iv, bytes(plaintext), None)
    except (OverflowError, TypeError, ValueError, NotImplementedError) as e:
        raise EncryptionError(
            ErrorCode.E101_ENCRYPTION_FAILED, f"Chunk encryption failed: {e}", {"error": str(e)}
        )

    return ciphertext, iv


def decrypt_chunk(ciphertext: bytes, iv: bytes, key: bytes) -> bytes:
    """
    Decrypt one AES-256-GCM chunk.

    Raises:
        AuthenticationFailure: If the tag does not verify (tampered data or wrong key)
        DecryptionError: If key or IV have the wrong size
    """
    if len(key) != KEY_SIZE:
        raise DecryptionError(
            ErrorCode.E103_INVALID_KEY,
            f"Decryption key must be {KEY_SIZE} bytes",
            {"length": len(key)},
        )
    if len(iv) != IV_SIZE:
        raise DecryptionError(
            ErrorCode.E102_DECRYPTION_FAILED,
            f"IV must be {IV_SIZE} bytes",
            {"length": len(iv)},
        )

    try:
        return AESGCM(key).decrypt(bytes(iv), bytes(ciphertext), None)
    except InvalidTag:
        raise AuthenticationFailure()


def generate_challenge() -> bytes:
    """Generate a 32-byte random challenge."""
    return secrets.token_bytes(CHALLENGE_SIZE)


def sign(challenge: bytes, signing_private: bytes) -> bytes:
    """
    Sign the SHA-256 hash of a challenge.

    Returns:
        64-byte compact signature (r || s), normalised to low-S

    Raises:
        CryptoError: If the private key is invalid
    """
    private = load_private_key(signing_private)
    digest = hashlib.sha256(challenge).digest()

    der_signature = private.sign(digest, ec.ECDSA(Prehashed(hashes.SHA256())))
    r, s = decode_dss_signature(der_signature)
    if s > SECP256K1_ORDER // 2:
        s = SECP256K1_ORDER - s

    half = SIGNATURE_SIZE // 2
    return r.to_bytes(half, "big") + s.to_bytes(half, "big")


def verify(challenge: bytes, signature: bytes, signing_public: bytes) -> bool:
    """
    Verify a compact challenge signature.

    Returns False for any malformed signature or key instead of raising.
    """
    if len(signature) != SIGNATURE_SIZE:
        return False

    half = SIGNATURE_SIZE // 2
    r = int.from_bytes(signature[:half], "big")
    s = int.from_bytes(signature[half:], "big")
    if not (0 < r < SECP256K1_ORDER and 0 < s < SECP256K1_ORDER):
        return False

    try:
        public = load_public_key(signing_public)
        digest = hashlib.sha256(challenge).digest()
        public.verify(encode_dss_signature(r, s), digest, ec.ECDSA(Prehashed(hashes.SHA256())))
        return True
    except (InvalidSignature, CryptoError, ValueError):
        return False


def bytes_to_hex(data: bytes) -> str:
    """Encode bytes as lowercase hex for text transports."""
    return bytes(data).hex()


def hex_to_bytes(text: str) -> bytes:
    """
    Decode a hex string received from a peer.

    Raises:
        ProtocolError: If the string is not valid hex
    """
    try:
        return bytes.fromhex(text)
    except (TypeError, ValueError) as e:
        raise ProtocolError(
            ErrorCode.E206_INVALID_MESSAGE, f"Invalid hex encoding: {e}", {"error": str(e)}
        )


def generate_file_id() -> str:
    """Generate an opaque unique identifier for a shared file."""
    return str(uuid.uuid4())
