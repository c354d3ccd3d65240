import logging
import time
from typing import FrozenSet

from auth import IdentityProvider
from errors import TokenError
from keys import KeyManager
from models import AuthorizationCode, RefreshToken, SubjectClaims, TokenRequest, TokenResponse, format_scope
from pkce import generate_opaque_token, verify_s256
from store import TokenStore

logger = logging.getLogger(__name__)


class TokenEngine:
    """
    Token endpoint logic: redeems authorization codes and rotates refresh
    tokens, issuing RS256 access tokens signed by the KeyManager.

    Every grant failure surfaces as invalid_grant. The specific reason is
    only logged so callers cannot probe which check failed.
    """

    def __init__(
        self,
        config,
        key_manager: KeyManager,
        codes: TokenStore,
        refresh_tokens: TokenStore,
        identity: IdentityProvider,
    ):
        self.config = config
        self.key_manager = key_manager
        self.codes = codes
        self.refresh_tokens = refresh_tokens
        self.identity = identity

    async def token(self, request: TokenRequest) -> TokenResponse:
        if request.grant_type == "authorization_code":
            return await self.exchange_code_for_token(request)
        if request.grant_type == "refresh_token":
            return await self.refresh(request)

        logger.warning(f"Token request with unsupported grant_type {request.grant_type!r}")
        raise TokenError("unsupported_grant_type", "Unsupported grant_type")

    async def exchange_code_for_token(self, request: TokenRequest) -> TokenResponse:
        """Exchange authorization code for tokens with PKCE verification"""

        # Consume before validating: a concurrent second redemption sees nothing
        record: AuthorizationCode = self.codes.take(request.code)
        if record is None:
            logger.warning(f"Code exchange failed for client {request.client_id}: code not found")
            raise TokenError.invalid_grant("Authorization code not found")

        if record.is_expired():
            logger.warning(f"Code exchange failed for client {request.client_id}: code expired")
            raise TokenError.invalid_grant("Authorization code expired")

        if record.client_id != request.client_id or record.redirect_uri != request.redirect_uri:
            logger.warning(f"Code exchange failed: code bound to {record.client_id}, presented by {request.client_id}")
            raise TokenError.invalid_grant("Invalid client_id or redirect_uri")

        if not verify_s256(request.code_verifier, record.code_challenge):
            logger.warning(f"Code exchange failed for client {record.client_id}: PKCE verification failed")
            raise TokenError.invalid_grant("Invalid PKCE code verifier")

        try:
            access_token = self._issue_access_token(record.client_id, record.subject, record.scope)
        except Exception:
            # Signing failures must not burn the code
            self.codes.put(record.code, record)
            raise

        refresh_token = self._mint_refresh_token(record.client_id, record.subject.sub, record.scope)

        logger.info(f"Access token issued for client {record.client_id} (sub={record.subject.sub})")
        return TokenResponse(
            access_token=access_token,
            expires_in=self.config.oauth_token_expiry,
            refresh_token=refresh_token.token,
            scope=format_scope(record.scope),
        )

    async def refresh(self, request: TokenRequest) -> TokenResponse:
        """Rotate a refresh token: the presented one is consumed, a new one is issued"""

        # Only the owning client can consume the token
        record: RefreshToken = self.refresh_tokens.take(
            request.refresh_token,
            match=lambda stored: stored.client_id == request.client_id,
        )
        if record is None:
            logger.warning(f"Refresh failed for client {request.client_id}: token not found or not owned")
            raise TokenError.invalid_grant("Invalid refresh token")

        if record.is_expired():
            logger.warning(f"Refresh failed for client {record.client_id}: token expired")
            raise TokenError.invalid_grant("Refresh token expired")

        subject = self.identity.lookup(record.subject)
        if subject is None:
            logger.warning(f"Refresh failed for client {record.client_id}: unknown subject {record.subject}")
            raise TokenError.invalid_grant("Invalid refresh token")

        try:
            access_token = self._issue_access_token(record.client_id, subject, record.scope)
        except Exception:
            self.refresh_tokens.put(record.token, record)
            raise

        replacement = self._mint_refresh_token(record.client_id, record.subject, record.scope)

        logger.info(f"Refresh token rotated for client {record.client_id}: {record.token[:8]}... -> {replacement.token[:8]}...")
        return TokenResponse(
            access_token=access_token,
            expires_in=self.config.oauth_token_expiry,
            refresh_token=replacement.token,
            scope=format_scope(record.scope),
        )

    def _issue_access_token(self, client_id: str, subject: SubjectClaims, scope: FrozenSet[str]) -> str:
        now = int(time.time())
        claims = {
            "iss": self.config.issuer,
            "aud": client_id,
            "sub": subject.sub,
            "scope": format_scope(scope),
            "name": subject.name,
            "email": subject.email,
            "iat": now,
            "exp": now + self.config.oauth_token_expiry,
        }
        return self.key_manager.sign(claims, {"typ": "JWT"})

    def _mint_refresh_token(self, client_id: str, subject: str, scope: FrozenSet[str]) -> RefreshToken:
        record = RefreshToken(
            token=generate_opaque_token(),
            client_id=client_id,
            subject=subject,
            scope=scope,
            expires_at=time.time() + self.config.oauth_refresh_token_expiry,
        )
        self.refresh_tokens.put(record.token, record)
        return record
