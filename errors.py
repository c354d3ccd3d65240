from typing import Dict, Optional


class OAuthError(Exception):
    """Base OAuth protocol error carrying a standard error code"""

    status_code = 400

    def __init__(self, error: str, description: str):
        super().__init__(f"{error}: {description}")
        self.error = error
        self.description = description

    def to_dict(self) -> Dict[str, str]:
        return {"error": self.error, "error_description": self.description}


class AuthorizeError(OAuthError):
    """Rejected /authorize request. Rendered as plain text, never redirected."""


class TokenError(OAuthError):
    """Rejected /token request (invalid_grant, unsupported_grant_type)"""

    @classmethod
    def invalid_grant(cls, description: str) -> "TokenError":
        return cls("invalid_grant", description)


class Unauthenticated(OAuthError):
    """Missing, malformed or unverifiable bearer token"""

    status_code = 401

    def __init__(self, description: str):
        super().__init__("unauthenticated", description)

    @property
    def www_authenticate(self) -> str:
        if self.description == MISSING_HEADER:
            return 'Bearer realm="api"'
        return 'Bearer realm="api", error="invalid_token"'


class InsufficientScope(OAuthError):
    """Verified token lacks the scope required by the endpoint"""

    status_code = 403

    def __init__(self, required_scope: str):
        super().__init__("insufficient_scope", f"Insufficient scope: '{required_scope}' required")
        self.required_scope = required_scope

    @property
    def www_authenticate(self) -> str:
        return f'Bearer realm="api", error="insufficient_scope", scope="{self.required_scope}"'

    def to_dict(self) -> Dict[str, str]:
        body = super().to_dict()
        body["required_scope"] = self.required_scope
        return body


class KeySetUnavailable(OAuthError):
    """Verification keys could not be fetched; the request is refused, never waved through"""

    status_code = 503

    def __init__(self, description: str):
        super().__init__("temporarily_unavailable", description)


class SigningKeyError(RuntimeError):
    """Signing key missing or unusable. Fatal: tokens are never issued unsigned."""


MISSING_HEADER = "Missing or invalid Authorization header"
INVALID_TOKEN = "Invalid token"


def auth_headers(exc: OAuthError) -> Optional[Dict[str, str]]:
    """WWW-Authenticate header for 401/403 responses"""
    challenge = getattr(exc, "www_authenticate", None)
    if challenge:
        return {"WWW-Authenticate": challenge}
    return None
