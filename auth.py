import logging
import time
from typing import Dict, Iterable, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from errors import AuthorizeError
from models import AuthorizationCode, Client, SubjectClaims, parse_scope
from pkce import generate_opaque_token
from store import TokenStore

logger = logging.getLogger(__name__)


class ClientRegistry:
    """Static client lookup, loaded at startup and never mutated"""

    def __init__(self, clients: Iterable[Client]):
        self._clients: Dict[str, Client] = {client.id: client for client in clients}

    @classmethod
    def from_mapping(cls, mapping: Dict[str, Iterable[str]]) -> "ClientRegistry":
        return cls(
            Client(id=client_id, allowed_redirect_uris=frozenset(uris))
            for client_id, uris in mapping.items()
        )

    def get(self, client_id: Optional[str]) -> Optional[Client]:
        if client_id is None:
            return None
        return self._clients.get(client_id)

    def __len__(self) -> int:
        return len(self._clients)


class IdentityProvider:
    """
    Stand-in for the login session: every request is authenticated as the
    configured demo user.
    """

    def __init__(self, user: Dict[str, str]):
        self._user = SubjectClaims(**user)

    def current_subject(self) -> SubjectClaims:
        return self._user

    def lookup(self, sub: str) -> Optional[SubjectClaims]:
        return self._user if sub == self._user.sub else None


class AuthorizationEngine:
    """Validates /authorize requests and issues single-use authorization codes"""

    def __init__(self, config, clients: ClientRegistry, codes: TokenStore, identity: IdentityProvider):
        self.config = config
        self.clients = clients
        self.codes = codes
        self.identity = identity

    async def authorize(
        self,
        response_type: Optional[str],
        client_id: Optional[str],
        redirect_uri: Optional[str],
        scope: Optional[str] = None,
        state: Optional[str] = None,
        code_challenge: Optional[str] = None,
        code_challenge_method: Optional[str] = None,
    ) -> str:
        """Issue a code and return the redirect URL carrying it. First failed check wins."""

        client = self.clients.get(client_id)
        if client is None:
            logger.warning(f"Authorization rejected: unknown client {client_id!r}")
            raise AuthorizeError("invalid_client", "Invalid client_id")

        # Never redirect to an unregistered URI, not even with an error
        if not client.allows_redirect(redirect_uri):
            logger.warning(f"Authorization rejected: unregistered redirect_uri {redirect_uri!r} for {client_id}")
            raise AuthorizeError("invalid_redirect_uri", "Invalid redirect_uri")

        if response_type != "code":
            raise AuthorizeError("unsupported_response_type", "Unsupported response_type")

        if not code_challenge or code_challenge_method != "S256":
            logger.warning(f"Authorization rejected: PKCE S256 challenge missing for {client_id}")
            raise AuthorizeError("missing_pkce_challenge", "PKCE code challenge required")

        subject = self.identity.current_subject()
        code = generate_opaque_token()

        self.codes.put(code, AuthorizationCode(
            code=code,
            client_id=client.id,
            redirect_uri=redirect_uri,
            code_challenge=code_challenge,
            scope=parse_scope(scope),
            subject=subject,
            expires_at=time.time() + self.config.oauth_code_expiry,
        ))

        logger.info(f"Authorization code {code[:8]}... created for client {client_id} (sub={subject.sub})")
        return build_redirect(redirect_uri, code=code, state=state)


def build_redirect(redirect_uri: str, **params: Optional[str]) -> str:
    """Append params to redirect_uri, keeping any query it already has"""
    parts = urlsplit(redirect_uri)
    query = parse_qsl(parts.query, keep_blank_values=True)
    query.extend((key, value) for key, value in params.items() if value)
    return urlunsplit(parts._replace(query=urlencode(query)))
