"""
Signing keys for caller tokens, fetched from Entra and cached with a TTL.

Entra rotates its signing keys. A token whose ``kid`` is not in the cached
set triggers one forced refresh before the key is reported missing.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any

import requests
from jwt import PyJWK

logger = logging.getLogger(__name__)


class JWKSCache:
    """Thread-safe JWKS cache shared by all requests of one app instance."""

    def __init__(self, jwks_uri: str, ttl_seconds: int, *, timeout: float = 10.0) -> None:
        self._uri = jwks_uri
        self._ttl = ttl_seconds
        self._timeout = timeout
        self._keys: dict[str, dict[str, Any]] = {}
        self._fetched_at: float | None = None
        self._lock = threading.Lock()

    def _load(self) -> None:
        resp = requests.get(self._uri, timeout=self._timeout)
        resp.raise_for_status()
        keys = resp.json().get("keys") or []
        self._keys = {k["kid"]: k for k in keys if isinstance(k, dict) and k.get("kid")}
        self._fetched_at = time.monotonic()
        logger.debug("JWKS loaded keys=%s uri=%s", len(self._keys), self._uri)

    def _stale(self) -> bool:
        return self._fetched_at is None or (time.monotonic() - self._fetched_at) >= self._ttl

    def get_signing_key(self, kid: str) -> PyJWK | None:
        with self._lock:
            if self._stale():
                self._load()
            key_dict = self._keys.get(kid)
            if key_dict is None:
                logger.info("kid not in cached JWKS; refreshing for possible key rotation")
                self._load()
                key_dict = self._keys.get(kid)
        return PyJWK.from_dict(key_dict) if key_dict is not None else None
