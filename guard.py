"""Bearer token verification and scope enforcement for protected endpoints.

Verification needs only the public key: either the local KeyManager (same
process as the authorization server) or the published JWKS fetched over
HTTP and cached by key id.
"""

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional

import httpx
import jwt
from fastapi import Request

from errors import INVALID_TOKEN, MISSING_HEADER, InsufficientScope, KeySetUnavailable, Unauthenticated
from keys import KeyManager
from models import parse_scope

logger = logging.getLogger(__name__)

REQUIRED_CLAIMS = ["iss", "aud", "sub", "exp", "iat"]


class UnknownKeyError(jwt.InvalidTokenError):
    pass


class LocalKeySet:
    """Verification key taken directly from an in-process KeyManager"""

    def __init__(self, key_manager: KeyManager):
        self.key_manager = key_manager

    async def get_signing_key(self, kid: Optional[str]):
        if kid != self.key_manager.key_id:
            raise UnknownKeyError(f"Unknown key id {kid!r}")
        return self.key_manager.public_key


class RemoteKeySet:
    """JWKS fetched from the authorization server, cached for cache_ttl seconds"""

    def __init__(
        self,
        jwks_url: str,
        http_client: Optional[httpx.AsyncClient] = None,
        cache_ttl: int = 3600,
        refetch_cooldown: int = 30,
        timeout: float = 10.0,
    ):
        self.jwks_url = jwks_url
        self.cache_ttl = cache_ttl
        self.refetch_cooldown = refetch_cooldown
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout)
        self._keys: Dict[str, Any] = {}
        self._expires_at = 0.0
        self._last_refetch = 0.0
        # Created on first use so it binds to the serving event loop
        self._lock: Optional[asyncio.Lock] = None

    async def close(self):
        await self._http_client.aclose()

    async def get_signing_key(self, kid: Optional[str]):
        keys = await self._load()
        if kid not in keys and self._refetch_allowed():
            # Unknown kid may mean the server rotated keys; refetch once
            keys = await self._load(force=True)
        if kid not in keys:
            raise UnknownKeyError(f"Unknown key id {kid!r}")
        return keys[kid]

    def _refetch_allowed(self) -> bool:
        now = time.time()
        if now - self._last_refetch < self.refetch_cooldown:
            logger.debug(f"Skipping JWKS refetch, last one {now - self._last_refetch:.1f}s ago")
            return False
        self._last_refetch = now
        return True

    async def _load(self, force: bool = False) -> Dict[str, Any]:
        if self._lock is None:
            self._lock = asyncio.Lock()
        async with self._lock:
            if not force and self._keys and time.time() < self._expires_at:
                return self._keys

            try:
                response = await self._http_client.get(self.jwks_url)
                response.raise_for_status()
                jwks = response.json()
            except (httpx.HTTPError, ValueError) as e:
                logger.error(f"Failed to fetch JWKS from {self.jwks_url}: {e}")
                raise KeySetUnavailable("Verification keys unavailable") from e

            keys = {}
            for entry in jwks.get("keys", []):
                if entry.get("use", "sig") != "sig" or "kid" not in entry:
                    continue
                try:
                    keys[entry["kid"]] = jwt.PyJWK(entry).key
                except jwt.PyJWTError as e:
                    logger.warning(f"Skipping unusable JWK {entry.get('kid')}: {e}")

            self._keys = keys
            self._expires_at = time.time() + self.cache_ttl
            logger.info(f"Loaded {len(keys)} verification key(s) from {self.jwks_url}")
            return keys


class ResourceGuard:
    """Authenticates bearer tokens and enforces scopes"""

    def __init__(self, key_set, issuer: str, audience: str, algorithms: Optional[List[str]] = None):
        self.key_set = key_set
        self.issuer = issuer
        self.audience = audience
        self.algorithms = algorithms or ["RS256"]

    @staticmethod
    def extract_bearer(authorization: Optional[str]) -> str:
        scheme, _, token = (authorization or "").partition(" ")
        token = token.strip()
        if scheme.lower() != "bearer" or not token:
            raise Unauthenticated(MISSING_HEADER)
        return token

    async def authenticate(self, authorization: Optional[str]) -> Dict[str, Any]:
        """Verify the bearer token in an Authorization header and return its claims"""
        token = self.extract_bearer(authorization)

        try:
            header = jwt.get_unverified_header(token)
            key = await self.key_set.get_signing_key(header.get("kid"))
            claims = jwt.decode(
                token,
                key,
                algorithms=self.algorithms,
                issuer=self.issuer,
                audience=self.audience,
                options={"require": REQUIRED_CLAIMS},
            )
        except jwt.InvalidTokenError as e:
            # Reason stays in the log; the caller only learns the token was rejected
            logger.warning(f"Bearer token rejected: {type(e).__name__}: {e}")
            raise Unauthenticated(INVALID_TOKEN) from e

        return claims

    def authorize_scope(self, claims: Dict[str, Any], required_scope: str) -> None:
        if required_scope not in parse_scope(claims.get("scope")):
            logger.warning(f"Subject {claims.get('sub')} lacks scope {required_scope}")
            raise InsufficientScope(required_scope)

    def require_scope(self, required_scope: str):
        """
        Dependency factory: authenticate the request and require a scope.
        Verified claims are attached to request.state.claims.
        """
        async def _require_scope(request: Request) -> Dict[str, Any]:
            claims = await self.authenticate(request.headers.get("Authorization"))
            self.authorize_scope(claims, required_scope)
            request.state.claims = claims
            return claims

        return _require_scope
