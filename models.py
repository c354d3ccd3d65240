import time
from typing import Any, Dict, FrozenSet, Iterable, List, Optional

from pydantic import BaseModel, Field, field_validator


def parse_scope(scope: Optional[str]) -> FrozenSet[str]:
    """Split a space-delimited scope string into a set"""
    return frozenset((scope or "").split())


def format_scope(scopes: Iterable[str]) -> str:
    """Render a scope set as a space-delimited string"""
    return " ".join(sorted(scopes))


# Records
class Client(BaseModel):
    """Statically registered OAuth client"""
    id: str
    allowed_redirect_uris: FrozenSet[str]

    def allows_redirect(self, uri: Optional[str]) -> bool:
        # Exact match only, no prefix or loopback-port leniency
        return uri is not None and uri in self.allowed_redirect_uris


class SubjectClaims(BaseModel):
    """Claims describing the authenticated end user"""
    sub: str
    name: str
    email: str


class ExpiringRecord(BaseModel):
    expires_at: float

    def is_expired(self, now: Optional[float] = None) -> bool:
        return (time.time() if now is None else now) >= self.expires_at


class AuthorizationCode(ExpiringRecord):
    """Single-use authorization code bound to a client, redirect and PKCE challenge"""
    code: str
    client_id: str
    redirect_uri: str
    code_challenge: str
    scope: FrozenSet[str] = frozenset()
    subject: SubjectClaims


class RefreshToken(ExpiringRecord):
    """Opaque refresh token, rotated on every use"""
    token: str
    client_id: str
    subject: str
    scope: FrozenSet[str] = frozenset()


# OAuth Models
class TokenRequest(BaseModel):
    """OAuth 2.0 Token Request"""
    grant_type: Optional[str] = Field(None, description="Authorization grant type")
    code: Optional[str] = Field(None, description="Authorization code")
    redirect_uri: Optional[str] = Field(None, description="Redirect URI")
    client_id: Optional[str] = Field(None, description="Client identifier")
    code_verifier: Optional[str] = Field(None, description="PKCE code verifier")
    refresh_token: Optional[str] = Field(None, description="Refresh token for refresh grant")


class TokenResponse(BaseModel):
    """OAuth 2.0 Token Response"""
    access_token: str
    token_type: str = "Bearer"
    expires_in: int
    refresh_token: Optional[str] = None
    scope: Optional[str] = None


class OAuthErrorResponse(BaseModel):
    """OAuth 2.0 Error Response"""
    error: str
    error_description: Optional[str] = None


class JSONWebKey(BaseModel):
    """Public RSA key in JWK form"""
    kty: str
    n: str
    e: str
    use: str = "sig"
    alg: str
    kid: str

    @field_validator("use")
    @classmethod
    def validate_use(cls, v):
        if v != "sig":
            raise ValueError(f"Unsupported key use: {v}")
        return v


class JWKSResponse(BaseModel):
    """JSON Web Key Set"""
    keys: List[JSONWebKey]


class AuthorizationServerMetadata(BaseModel):
    """OAuth 2.0 Authorization Server Metadata (RFC 8414)"""
    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    jwks_uri: str
    scopes_supported: List[str]
    response_types_supported: List[str] = ["code"]
    grant_types_supported: List[str] = ["authorization_code", "refresh_token"]
    code_challenge_methods_supported: List[str] = ["S256"]
    token_endpoint_auth_methods_supported: List[str] = ["none"]


# Resource Models
class ProfileUser(BaseModel):
    sub: str
    name: Optional[str] = None
    email: Optional[str] = None
    scope: str


class ProfileResponse(BaseModel):
    """Protected profile data"""
    message: str = "Protected profile data"
    user: ProfileUser


# API Response Models
class HealthCheckResponse(BaseModel):
    """Health Check Response"""
    status: str
    service: str
    version: str
    timestamp: str
    components: Dict[str, Any]
    environment: str
