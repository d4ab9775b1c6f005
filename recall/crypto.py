"""Authenticated encryption for memory tiers.

Each tier file holds one envelope string:

    RECALL_ENCRYPTED:v<key version>:<base64 iv>:<base64 ciphertext+tag>

The cipher is AES-256-GCM with a fresh 96-bit nonce per call.
"""

from __future__ import annotations

import base64
import binascii
import os
from dataclasses import dataclass, field

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .errors import EncryptionError

MARKER = "RECALL_ENCRYPTED"
KEY_BYTES = 32
IV_BYTES = 12


@dataclass(frozen=True, slots=True)
class TeamKey:
    version: int
    material: bytes

    def __post_init__(self) -> None:
        if len(self.material) != KEY_BYTES:
            raise EncryptionError(f"team key must be {KEY_BYTES} bytes, got {len(self.material)}")
        if self.version < 1:
            raise EncryptionError("team key version must be >= 1")

    @classmethod
    def from_b64(cls, value: str, version: int = 1) -> TeamKey:
        try:
            material = base64.b64decode(value, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise EncryptionError("team key is not valid base64") from exc
        return cls(version=version, material=material)

    def to_b64(self) -> str:
        return base64.b64encode(self.material).decode("ascii")


def generate_key(version: int = 1) -> TeamKey:
    return TeamKey(version=version, material=AESGCM.generate_key(bit_length=256))


@dataclass(frozen=True, slots=True)
class Envelope:
    version: int
    iv: bytes
    ciphertext: bytes

    def to_string(self) -> str:
        iv = base64.b64encode(self.iv).decode("ascii")
        body = base64.b64encode(self.ciphertext).decode("ascii")
        return f"{MARKER}:v{self.version}:{iv}:{body}"

    @classmethod
    def parse(cls, value: str) -> Envelope:
        parts = value.strip().split(":")
        if len(parts) != 4 or parts[0] != MARKER:
            raise EncryptionError("not an encrypted envelope")
        tag = parts[1]
        if not tag.startswith("v") or not tag[1:].isdigit():
            raise EncryptionError(f"invalid envelope version: {tag!r}")
        try:
            iv = base64.b64decode(parts[2], validate=True)
            ciphertext = base64.b64decode(parts[3], validate=True)
        except (binascii.Error, ValueError) as exc:
            raise EncryptionError("envelope is not valid base64") from exc
        if len(iv) != IV_BYTES:
            raise EncryptionError("envelope iv has the wrong length")
        return cls(version=int(tag[1:]), iv=iv, ciphertext=ciphertext)


def is_encrypted(content: str) -> bool:
    return content.lstrip().startswith(f"{MARKER}:")


def encrypt(plaintext: str, key: TeamKey) -> Envelope:
    iv = os.urandom(IV_BYTES)
    ciphertext = AESGCM(key.material).encrypt(iv, plaintext.encode("utf-8"), None)
    return Envelope(version=key.version, iv=iv, ciphertext=ciphertext)


def decrypt(envelope: Envelope, key: TeamKey) -> str:
    """Decrypt or raise EncryptionError; never returns unauthenticated text."""

    try:
        data = AESGCM(key.material).decrypt(envelope.iv, envelope.ciphertext, None)
    except InvalidTag as exc:
        raise EncryptionError(
            f"decryption failed for key version {envelope.version}: wrong key or tampered data"
        ) from exc
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise EncryptionError("decrypted payload is not utf-8") from exc


@dataclass
class KeyRing:
    """All key versions a member holds; new encryptions use the newest."""

    keys: dict[int, TeamKey] = field(default_factory=dict)
    needs_reencrypt: bool = False

    @classmethod
    def of(cls, *keys: TeamKey) -> KeyRing:
        ring = cls()
        for key in keys:
            ring.add(key)
        return ring

    def add(self, key: TeamKey) -> None:
        self.keys[key.version] = key

    @property
    def current(self) -> TeamKey:
        if not self.keys:
            raise EncryptionError("no team key available")
        return self.keys[max(self.keys)]

    @property
    def version(self) -> int:
        return self.current.version

    def get(self, version: int) -> TeamKey:
        key = self.keys.get(version)
        if key is None:
            raise EncryptionError(f"team key version {version} is not available")
        return key

    def rotate(self) -> TeamKey:
        """Add a fresh key one version above the current one.

        Older versions stay in the ring until every document is rewritten.
        """

        next_version = max(self.keys) + 1 if self.keys else 1
        key = generate_key(next_version)
        self.add(key)
        self.needs_reencrypt = True
        return key

    def retire(self) -> None:
        """Drop every version but the current one once all documents are rewritten."""

        current = self.current
        self.keys = {current.version: current}
        self.needs_reencrypt = False

    def encrypt(self, plaintext: str) -> str:
        return encrypt(plaintext, self.current).to_string()

    def decrypt(self, content: str) -> str:
        envelope = Envelope.parse(content)
        return decrypt(envelope, self.get(envelope.version))
