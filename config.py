import json
import os
from typing import Dict, List

DEFAULT_CLIENTS = {"demo-client": ["http://localhost:4000/callback"]}


class Config:
    """Configuration management for the authorization server, resource server and demo client"""

    def __init__(self):
        # Server configuration
        self.host = os.getenv("HOST", "0.0.0.0")
        self.port = int(os.getenv("PORT", 3000))
        self.resource_port = int(os.getenv("RESOURCE_PORT", 5000))
        self.client_port = int(os.getenv("CLIENT_PORT", 4000))
        self.environment = os.getenv("ENVIRONMENT", "development")
        self.issuer = os.getenv("ISSUER", "http://localhost:3000").rstrip("/")

        # Security configuration
        self.allowed_origins = self._parse_allowed_origins()

        # OAuth configuration
        self.oauth_code_expiry = int(os.getenv("OAUTH_CODE_EXPIRY", 300))  # 5 minutes
        self.oauth_token_expiry = int(os.getenv("OAUTH_TOKEN_EXPIRY", 900))  # 15 minutes
        self.oauth_refresh_token_expiry = int(os.getenv("OAUTH_REFRESH_TOKEN_EXPIRY", 30 * 24 * 3600))  # 30 days
        self.clients = self._parse_clients()

        # Signing key configuration
        self.signing_key_path = os.getenv("SIGNING_KEY_PATH")
        self.signing_key_id = os.getenv("SIGNING_KEY_ID", "demo-key-1")
        self.signing_algorithm = os.getenv("SIGNING_ALGORITHM", "RS256")

        # Demo identity (login UI is out of scope)
        self.demo_user = {
            "sub": os.getenv("DEMO_USER_SUB", "alice"),
            "name": os.getenv("DEMO_USER_NAME", "Alice Example"),
            "email": os.getenv("DEMO_USER_EMAIL", "alice@example.com"),
        }

        # Cleanup configuration
        self.cleanup_interval = int(os.getenv("CLEANUP_INTERVAL", 300))  # 5 minutes, 0 disables

        # Resource server configuration
        self.resource_audience = os.getenv("RESOURCE_AUDIENCE", "demo-client")
        self.required_scope = os.getenv("REQUIRED_SCOPE", "api.read")
        self.jwks_url = os.getenv("JWKS_URL", f"{self.issuer}/.well-known/jwks.json")
        self.jwks_cache_ttl = int(os.getenv("JWKS_CACHE_TTL", 3600))
        self.jwks_refetch_cooldown = int(os.getenv("JWKS_REFETCH_COOLDOWN", 30))

        # Demo client configuration
        self.client_id = os.getenv("CLIENT_ID", "demo-client")
        self.client_redirect_uri = os.getenv("CLIENT_REDIRECT_URI", "http://localhost:4000/callback")
        self.client_scope = os.getenv("CLIENT_SCOPE", "api.read openid profile email")
        self.resource_url = os.getenv("RESOURCE_URL", "http://localhost:5000").rstrip("/")
        self.http_timeout = int(os.getenv("HTTP_TIMEOUT", 10))

        # Logging configuration
        self.log_level = os.getenv("LOG_LEVEL", "INFO")
        self.log_format = os.getenv("LOG_FORMAT", "%(asctime)s - %(name)s - %(levelname)s - %(message)s")

        self._validate_config()

    def _parse_allowed_origins(self) -> List[str]:
        """Parse allowed origins from environment variable"""
        origins_str = os.getenv("ALLOWED_ORIGINS", "*")
        if origins_str == "*":
            return ["*"]
        return [origin.strip() for origin in origins_str.split(",")]

    def _parse_clients(self) -> Dict[str, List[str]]:
        """Parse the static client table: JSON object of client_id -> redirect URIs"""
        raw = os.getenv("OAUTH_CLIENTS")
        if not raw:
            return {client_id: list(uris) for client_id, uris in DEFAULT_CLIENTS.items()}

        clients = json.loads(raw)
        if not isinstance(clients, dict) or not all(isinstance(uris, list) for uris in clients.values()):
            raise ValueError("OAUTH_CLIENTS must be a JSON object mapping client_id to a list of redirect URIs")
        return clients

    def _validate_config(self):
        """Validate configuration values"""
        if self.environment == "production":
            if not self.issuer.startswith("https://"):
                raise ValueError("ISSUER must use HTTPS in production")

            if not self.signing_key_path:
                raise ValueError("SIGNING_KEY_PATH must be set in production")

        if self.oauth_code_expiry < 30 or self.oauth_code_expiry > 600:
            raise ValueError("OAUTH_CODE_EXPIRY must be between 30 and 600 seconds")

        if self.oauth_token_expiry < 60:
            raise ValueError("OAUTH_TOKEN_EXPIRY must be at least 60 seconds")

        if self.oauth_refresh_token_expiry <= self.oauth_token_expiry:
            raise ValueError("OAUTH_REFRESH_TOKEN_EXPIRY must exceed OAUTH_TOKEN_EXPIRY")

    @property
    def is_development(self) -> bool:
        """Check if running in development mode"""
        return self.environment == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode"""
        return self.environment == "production"
