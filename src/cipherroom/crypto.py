"""Cryptographic primitives for cipherroom.

Includes:
- base64 codec for every value that crosses the process boundary
- P-256 identity key pairs, public-key records and fingerprints
- Room key derivation from the room code and member public keys
- AES-256-GCM message encryption with typed decryption failures
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable

from cryptography.exceptions import InvalidTag, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

CURVE_NAME = "secp256r1"
ROOM_KEY_SIZE = 32
NONCE_SIZE = 12
FINGERPRINT_BYTES = 8


class CryptoUnavailableError(RuntimeError):
    """Raised when the platform cannot provide the required primitives."""


class InvalidPublicKeyError(ValueError):
    """Raised when a public-key record cannot be parsed as a P-256 key."""


# =============================================================================
# Codec
# =============================================================================


def bytes_to_base64(data: bytes) -> str:
    """Encode bytes to standard base64 (with padding)."""
    return base64.b64encode(data).decode("ascii")


def base64_to_bytes(s: str) -> bytes:
    """Decode standard base64 text to bytes.

    Raises:
        ValueError: If the text contains non-alphabet characters or bad padding
    """
    try:
        return base64.b64decode(s.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError) as e:
        raise ValueError(f"Invalid base64 data: {e}") from e


# =============================================================================
# Identity (ECDH P-256)
# =============================================================================


def check_crypto_available() -> None:
    """Verify that EC key generation and AES-GCM are usable.

    Raises:
        CryptoUnavailableError: If either primitive is missing
    """
    try:
        ec.generate_private_key(ec.SECP256R1())
        AESGCM(bytes(ROOM_KEY_SIZE)).encrypt(bytes(NONCE_SIZE), b"", None)
    except UnsupportedAlgorithm as e:
        raise CryptoUnavailableError(f"Required cryptographic primitive unavailable: {e}") from e


class KeyPair:
    """A participant's identity key pair.

    The private key is held privately and is only used by the operations on
    this class. There is no method that exports it.
    """

    def __init__(self, private_key: ec.EllipticCurvePrivateKey):
        if private_key.curve.name != CURVE_NAME:
            raise InvalidPublicKeyError(f"Unsupported curve: {private_key.curve.name}")
        self._private_key = private_key
        self.public_key = private_key.public_key()
        self._record = bytes_to_base64(
            self.public_key.public_bytes(
                encoding=serialization.Encoding.DER,
                format=serialization.PublicFormat.SubjectPublicKeyInfo,
            )
        )

    @property
    def public_key_record(self) -> str:
        """Base64 SPKI encoding of the public key."""
        return self._record

    @property
    def fingerprint(self) -> str:
        """Human-verifiable fingerprint of the public key."""
        return fingerprint(self._record)

    def derive_shared_key(self, peer_public_key: str, info: bytes = b"cipherroom-pairwise") -> bytes:
        """
        Derive a pairwise key with a peer using ECDH and HKDF-SHA256.

        Both sides obtain the same 32-byte key from their own private key and
        the other side's public-key record.

        Args:
            peer_public_key: Peer's public-key record
            info: HKDF context string

        Returns:
            32-byte symmetric key
        """
        peer = load_public_key(peer_public_key)
        shared_secret = self._private_key.exchange(ec.ECDH(), peer)

        hkdf = HKDF(
            algorithm=hashes.SHA256(),
            length=ROOM_KEY_SIZE,
            salt=None,
            info=info,
        )
        return hkdf.derive(shared_secret)

    def __repr__(self) -> str:
        return f"KeyPair(fingerprint={self.fingerprint!r})"


def create_identity() -> KeyPair:
    """
    Generate a new P-256 identity key pair.

    Raises:
        CryptoUnavailableError: If EC key generation is not supported
    """
    try:
        private_key = ec.generate_private_key(ec.SECP256R1())
    except UnsupportedAlgorithm as e:
        raise CryptoUnavailableError(f"EC key generation unavailable: {e}") from e
    return KeyPair(private_key)


def export_public_key(keypair: KeyPair) -> str:
    """Export a key pair's public key as a base64 SPKI record."""
    return keypair.public_key_record


def load_public_key(record: str) -> ec.EllipticCurvePublicKey:
    """
    Parse and validate a public-key record received from another participant.

    Raises:
        InvalidPublicKeyError: If the record is not a base64 P-256 SPKI key
    """
    try:
        der = base64_to_bytes(record)
        key = serialization.load_der_public_key(der)
    except (ValueError, UnsupportedAlgorithm) as e:
        raise InvalidPublicKeyError(f"Malformed public key record: {e}") from e

    if not isinstance(key, ec.EllipticCurvePublicKey) or key.curve.name != CURVE_NAME:
        raise InvalidPublicKeyError("Public key is not a P-256 key")
    return key


def fingerprint(record: str) -> str:
    """
    Compute the fingerprint of a public-key record.

    SHA-256 over the SPKI bytes; the first 8 bytes rendered as upper-case hex
    octets separated by spaces.

    Returns:
        e.g. "3F 0A 9C 11 D2 7B 00 E4"
    """
    digest = hashlib.sha256(base64_to_bytes(record)).digest()
    return " ".join(f"{b:02X}" for b in digest[:FINGERPRINT_BYTES])


# =============================================================================
# Room key derivation
# =============================================================================


@dataclass(frozen=True)
class RoomKey:
    """Symmetric AES-256-GCM key shared by the current members of a room."""

    material: bytes = field(repr=False)
    room_code: str = field(default="", compare=False)
    version: int = field(default=0, compare=False)

    @property
    def key_id(self) -> str:
        """Short identifier safe for logs and out-of-band comparison."""
        return hashlib.sha256(self.material).hexdigest()[:16]


def compute_membership_hash(member_keys: Iterable[str]) -> str:
    """
    Compute a deterministic hash of room membership.

    Order-independent: keys are deduplicated and sorted first.

    Returns:
        64-character hex string (SHA-256 hash)
    """
    membership_string = "\x00".join(sorted(set(member_keys)))
    return hashlib.sha256(membership_string.encode("utf-8")).hexdigest()


def derive_room_key(room_code: str, member_public_keys: Iterable[str], version: int = 0) -> RoomKey:
    """
    Derive the room key from the room code and current member public keys.

    The key is SHA-256(room_code + sorted keys), used directly as the
    AES-256-GCM key. All members holding the same membership set derive the
    same key independently.

    Args:
        room_code: Normalized room code
        member_public_keys: Public-key records of every current member
        version: Membership version this key belongs to

    Returns:
        RoomKey for the given membership

    Raises:
        ValueError: If the key set is empty
    """
    sorted_keys = sorted(set(member_public_keys))
    if not sorted_keys:
        raise ValueError("A room must contain at least one member key")

    combined = room_code + "".join(sorted_keys)
    digest = hashlib.sha256(combined.encode("utf-8")).digest()
    return RoomKey(material=digest, room_code=room_code, version=version)


# =============================================================================
# Message encryption (AES-256-GCM)
# =============================================================================


@dataclass(frozen=True)
class EncryptedEnvelope:
    """Container for an encrypted room message."""

    ciphertext: str  # base64: AES-GCM ciphertext + 16-byte tag
    nonce: str  # base64: 12-byte nonce
    sender_id: str | None = None
    timestamp: str | None = None
    epoch: int | None = None  # membership version of the encrypting key

    def to_dict(self) -> dict[str, Any]:
        """Convert to the camelCase wire dictionary."""
        return {
            "ciphertext": self.ciphertext,
            "nonce": self.nonce,
            "senderId": self.sender_id,
            "timestamp": self.timestamp,
            "epoch": self.epoch,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EncryptedEnvelope":
        """Reconstruct from a wire dictionary."""
        return cls(
            ciphertext=data["ciphertext"],
            nonce=data["nonce"],
            sender_id=data.get("senderId"),
            timestamp=data.get("timestamp"),
            epoch=data.get("epoch"),
        )


class DecryptFailureReason(str, Enum):
    AUTHENTICATION = "authentication"
    MALFORMED = "malformed"
    STALE_KEY = "stale_key"


@dataclass(frozen=True)
class DecryptFailure:
    """Returned instead of plaintext when a message cannot be decrypted."""

    reason: DecryptFailureReason
    detail: str = ""


def _associated_data(sender_id: str | None, timestamp: str | None, epoch: int | None) -> bytes:
    return json.dumps(
        {"senderId": sender_id, "timestamp": timestamp, "epoch": epoch},
        sort_keys=True,
        separators=(",", ":"),
    ).encode("utf-8")


def encrypt_message(
    key: RoomKey,
    plaintext: str,
    sender_id: str | None = None,
    timestamp: str | None = None,
    bind_metadata: bool = False,
) -> EncryptedEnvelope:
    """
    Encrypt a message under the room key with AES-256-GCM.

    A fresh random 96-bit nonce is generated for every call.

    Args:
        key: Current room key
        plaintext: Message text
        sender_id: Passthrough sender metadata
        timestamp: Passthrough timestamp metadata
        bind_metadata: Authenticate sender_id, timestamp and epoch as AAD

    Returns:
        EncryptedEnvelope with base64 ciphertext and nonce
    """
    nonce = os.urandom(NONCE_SIZE)
    aad = _associated_data(sender_id, timestamp, key.version) if bind_metadata else None
    ciphertext = AESGCM(key.material).encrypt(nonce, plaintext.encode("utf-8"), aad)

    return EncryptedEnvelope(
        ciphertext=bytes_to_base64(ciphertext),
        nonce=bytes_to_base64(nonce),
        sender_id=sender_id,
        timestamp=timestamp,
        epoch=key.version,
    )


def decrypt_message(
    key: RoomKey,
    envelope: EncryptedEnvelope,
    bind_metadata: bool = False,
) -> str | DecryptFailure:
    """
    Decrypt and verify a message.

    Never raises for bad input: tampered data, a wrong key or malformed
    fields produce a DecryptFailure.

    Returns:
        Plaintext string, or DecryptFailure
    """
    try:
        nonce = base64_to_bytes(envelope.nonce)
        ciphertext = base64_to_bytes(envelope.ciphertext)
    except (ValueError, AttributeError) as e:
        return DecryptFailure(DecryptFailureReason.MALFORMED, str(e))

    if len(nonce) != NONCE_SIZE:
        return DecryptFailure(DecryptFailureReason.MALFORMED, f"Nonce must be {NONCE_SIZE} bytes")

    aad = (
        _associated_data(envelope.sender_id, envelope.timestamp, envelope.epoch)
        if bind_metadata
        else None
    )
    try:
        plaintext = AESGCM(key.material).decrypt(nonce, ciphertext, aad)
    except InvalidTag:
        return DecryptFailure(DecryptFailureReason.AUTHENTICATION, "Authentication tag mismatch")

    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as e:
        return DecryptFailure(DecryptFailureReason.MALFORMED, str(e))
