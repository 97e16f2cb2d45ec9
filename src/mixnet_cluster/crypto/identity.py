"""Identity and link key material for role instances."""

import base64
import binascii
import hashlib
from dataclasses import dataclass, field

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey

from mixnet_cluster.errors import CryptoFailure

KEY_SIZE = 32

_RAW_PRIVATE = dict(
    encoding=serialization.Encoding.Raw,
    format=serialization.PrivateFormat.Raw,
    encryption_algorithm=serialization.NoEncryption(),
)
_RAW_PUBLIC = dict(
    encoding=serialization.Encoding.Raw,
    format=serialization.PublicFormat.Raw,
)


def encode_key(raw: bytes) -> str:
    """Text form used inside config documents."""
    return base64.b64encode(raw).decode("ascii")


def decode_key(text: str) -> bytes:
    try:
        raw = base64.b64decode(text.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError) as exc:
        raise CryptoFailure(f"Malformed key text: {exc}") from exc
    if len(raw) != KEY_SIZE:
        raise CryptoFailure(f"Key must be {KEY_SIZE} bytes, got {len(raw)}")
    return raw


@dataclass(frozen=True)
class LinkKey:
    """X25519 key pair used for link-layer authentication and mail-proxy accounts."""

    private_key: bytes = field(repr=False)
    public_key: bytes

    @classmethod
    def from_private_bytes(cls, private_key: bytes) -> "LinkKey":
        try:
            key_obj = X25519PrivateKey.from_private_bytes(private_key)
            public = key_obj.public_key().public_bytes(**_RAW_PUBLIC)
        except (ValueError, UnsupportedAlgorithm) as exc:
            raise CryptoFailure(f"Invalid X25519 private key: {exc}") from exc
        return cls(private_key=private_key, public_key=public)

    @classmethod
    def from_text(cls, text: str) -> "LinkKey":
        return cls.from_private_bytes(decode_key(text))

    def private_text(self) -> str:
        return encode_key(self.private_key)

    def public_text(self) -> str:
        return encode_key(self.public_key)


@dataclass(frozen=True)
class Identity:
    """
    Ed25519 signing identity bound to exactly one role instance.

    The link key is derived from the same secret (the X25519 scalar is the
    clamped first half of SHA-512 over the Ed25519 seed), so one private key
    serves both identity and link authentication. That reuse is only
    acceptable for disposable test clusters.
    """

    private_key: bytes = field(repr=False)
    public_key: bytes

    @classmethod
    def from_private_bytes(cls, private_key: bytes) -> "Identity":
        try:
            key_obj = Ed25519PrivateKey.from_private_bytes(private_key)
            public = key_obj.public_key().public_bytes(**_RAW_PUBLIC)
        except (ValueError, UnsupportedAlgorithm) as exc:
            raise CryptoFailure(f"Invalid Ed25519 private key: {exc}") from exc
        return cls(private_key=private_key, public_key=public)

    @classmethod
    def from_text(cls, text: str) -> "Identity":
        return cls.from_private_bytes(decode_key(text))

    @property
    def link_key(self) -> LinkKey:
        scalar = hashlib.sha512(self.private_key).digest()[:KEY_SIZE]
        return LinkKey.from_private_bytes(scalar)

    @property
    def link_public_key(self) -> bytes:
        return self.link_key.public_key

    def private_text(self) -> str:
        return encode_key(self.private_key)

    def public_text(self) -> str:
        return encode_key(self.public_key)


def generate_identity() -> Identity:
    """Generate a fresh Ed25519 identity."""
    try:
        key_obj = Ed25519PrivateKey.generate()
        private_bytes = key_obj.private_bytes(**_RAW_PRIVATE)
    except (ValueError, UnsupportedAlgorithm) as exc:
        raise CryptoFailure(f"Ed25519 key generation failed: {exc}") from exc
    return Identity.from_private_bytes(private_bytes)


def generate_link_key() -> LinkKey:
    """Generate a fresh X25519 key pair."""
    try:
        key_obj = X25519PrivateKey.generate()
        private_bytes = key_obj.private_bytes(**_RAW_PRIVATE)
    except (ValueError, UnsupportedAlgorithm) as exc:
        raise CryptoFailure(f"X25519 key generation failed: {exc}") from exc
    return LinkKey.from_private_bytes(private_bytes)
