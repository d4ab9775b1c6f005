from __future__ import annotations

import hashlib
import logging
import socket
import uuid
from typing import Any, Protocol

import httpx

from .config import RecallConfig
from .crypto import Envelope, KeyRing, TeamKey, decrypt, encrypt
from .errors import EncryptionError

logger = logging.getLogger(__name__)


def machine_id() -> str:
    node = uuid.getnode()
    mac = ":".join(f"{(node >> shift) & 0xFF:02x}" for shift in range(40, -1, -8))
    raw = f"{socket.gethostname()}:{mac}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:32]


class KeyCustody(Protocol):
    def fetch(self, version: int | None = None) -> TeamKey: ...

    def rotate(self, ring: KeyRing) -> TeamKey: ...


class StaticKeyCustody:
    """A team key supplied through configuration (self-hosted teams, tests)."""

    def __init__(self, key_b64: str, version: int = 1) -> None:
        self.key = TeamKey.from_b64(key_b64, version)

    def fetch(self, version: int | None = None) -> TeamKey:
        if version is not None and version != self.key.version:
            raise EncryptionError(
                f"team key version {version} is not configured (have v{self.key.version})"
            )
        return self.key

    def rotate(self, ring: KeyRing) -> TeamKey:
        # The holder of a static key is its admin; the new key is written back to config.
        self.key = ring.rotate()
        return self.key


class HttpKeyCustody:
    """Key custody service: POST /keys/team and POST /keys/rotate."""

    def __init__(
        self,
        api_url: str,
        token: str,
        *,
        timeout_s: float = 15.0,
        retries: int = 1,
        transport: httpx.BaseTransport | None = None,
        machine: str | None = None,
    ) -> None:
        self.base_url = api_url.rstrip("/")
        self.token = token
        self.timeout_s = timeout_s
        self.retries = max(0, retries)
        self.transport = transport
        self.machine_id = machine or machine_id()

    def _post(self, path: str, body: dict[str, Any]) -> tuple[int, dict[str, Any]]:
        headers = {"Authorization": f"Bearer {self.token}", "Accept": "application/json"}
        last_error: Exception | None = None
        with httpx.Client(timeout=self.timeout_s, transport=self.transport) as client:
            for attempt in range(self.retries + 1):
                try:
                    response = client.post(f"{self.base_url}{path}", json=body, headers=headers)
                except httpx.HTTPError as exc:
                    last_error = exc
                    logger.info(
                        "key custody request failed",
                        extra={"path": path, "attempt": attempt + 1, "error": str(exc)},
                    )
                    continue
                try:
                    payload = response.json()
                except ValueError:
                    payload = {}
                if response.status_code >= 500:
                    last_error = EncryptionError(f"key service returned {response.status_code}")
                    continue
                return response.status_code, payload if isinstance(payload, dict) else {}
        raise EncryptionError(f"key service unavailable: {last_error}")

    def fetch(self, version: int | None = None) -> TeamKey:
        body: dict[str, Any] = {"machineId": self.machine_id}
        if version is not None:
            body["keyVersion"] = version
        status, payload = self._post("/keys/team", body)
        if status >= 400 or not payload.get("hasAccess"):
            message = payload.get("message") or payload.get("error") or "no access to team key"
            raise EncryptionError(f"team key unavailable: {message}")
        key = payload.get("key")
        if not isinstance(key, str) or not key:
            raise EncryptionError("key service returned no key")
        key_version = payload.get("keyVersion", version or 1)
        try:
            return TeamKey.from_b64(key, int(key_version))
        except (TypeError, ValueError) as exc:
            raise EncryptionError(f"invalid key version: {key_version!r}") from exc

    def rotate(self, ring: KeyRing) -> TeamKey:
        status, payload = self._post("/keys/rotate", {"machineId": self.machine_id})
        if status >= 400:
            message = payload.get("message") or payload.get("error") or f"status {status}"
            raise EncryptionError(f"key rotation refused: {message}")
        version = payload.get("keyVersion")
        if not isinstance(version, int):
            raise EncryptionError("key service returned no key version")
        key = self.fetch(version)
        ring.add(key)
        ring.needs_reencrypt = True
        return key


class KeyManager:
    """Holds team keys in memory for the lifetime of one command."""

    def __init__(self, custody: KeyCustody) -> None:
        self.custody = custody
        self.ring = KeyRing()

    def current(self) -> TeamKey:
        if not self.ring.keys:
            self.ring.add(self.custody.fetch())
        return self.ring.current

    def key_for(self, version: int) -> TeamKey:
        if version not in self.ring.keys:
            self.ring.add(self.custody.fetch(version))
        return self.ring.get(version)

    def encrypt(self, plaintext: str) -> str:
        return encrypt(plaintext, self.current()).to_string()

    def decrypt(self, content: str) -> str:
        envelope = Envelope.parse(content)
        return decrypt(envelope, self.key_for(envelope.version))

    def rotate(self) -> TeamKey:
        self.current()
        key = self.custody.rotate(self.ring)
        logger.info("team key rotated", extra={"key_version": key.version})
        return key


def build_key_manager(
    config: RecallConfig,
    *,
    transport: httpx.BaseTransport | None = None,
) -> KeyManager | None:
    if config.team_key:
        return KeyManager(StaticKeyCustody(config.team_key, config.team_key_version))
    if config.api_token:
        return KeyManager(
            HttpKeyCustody(
                config.api_url,
                config.api_token,
                timeout_s=config.http_timeout_s,
                retries=config.http_retries,
                transport=transport,
            )
        )
    return None
