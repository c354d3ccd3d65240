import os

# Module-level apps are built at import time from the environment
os.environ["ENVIRONMENT"] = "development"
os.environ["CLEANUP_INTERVAL"] = "0"

from urllib.parse import parse_qs, urlsplit

import pytest
from fastapi.testclient import TestClient

from config import Config
from guard import LocalKeySet
from keys import KeyManager
from main import create_app
from pkce import compute_s256_challenge, generate_code_verifier
from resource_server import create_resource_app

CLIENT_ID = "demo-client"
REDIRECT_URI = "http://localhost:4000/callback"
ISSUER = "http://localhost:3000"


@pytest.fixture(scope="session")
def key_manager():
    """One RSA key for the whole run; generation is slow."""
    return KeyManager.generate("test-key-1")


@pytest.fixture
def config(monkeypatch):
    monkeypatch.setenv("ENVIRONMENT", "development")
    monkeypatch.setenv("ISSUER", ISSUER)
    monkeypatch.setenv("SIGNING_KEY_ID", "test-key-1")
    monkeypatch.delenv("OAUTH_CLIENTS", raising=False)
    monkeypatch.delenv("SIGNING_KEY_PATH", raising=False)
    return Config()


@pytest.fixture
def auth_app(config, key_manager):
    return create_app(config, key_manager)


@pytest.fixture
def auth_client(auth_app):
    return TestClient(auth_app, follow_redirects=False)


@pytest.fixture
def resource_app(config, key_manager):
    return create_resource_app(config, LocalKeySet(key_manager))


@pytest.fixture
def resource_client(resource_app):
    return TestClient(resource_app)


class OAuthFlow:
    """Drives /authorize and /token the way a public client would"""

    def __init__(self, client: TestClient):
        self.client = client

    def authorize(self, code_verifier=None, **overrides):
        code_verifier = code_verifier or generate_code_verifier()
        params = {
            "response_type": "code",
            "client_id": CLIENT_ID,
            "redirect_uri": REDIRECT_URI,
            "scope": "api.read openid",
            "code_challenge": compute_s256_challenge(code_verifier),
            "code_challenge_method": "S256",
        }
        params.update(overrides)
        params = {key: value for key, value in params.items() if value is not None}
        return self.client.get("/authorize", params=params)

    def issue_code(self, **overrides):
        """Return (code, verifier) from a successful authorization"""
        code_verifier = generate_code_verifier()
        response = self.authorize(code_verifier, **overrides)
        assert response.status_code == 302, response.text
        query = parse_qs(urlsplit(response.headers["location"]).query)
        return query["code"][0], code_verifier

    def redeem(self, code, code_verifier, **overrides):
        form = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": REDIRECT_URI,
            "client_id": CLIENT_ID,
            "code_verifier": code_verifier,
        }
        form.update(overrides)
        return self.client.post("/token", data={key: value for key, value in form.items() if value is not None})

    def refresh(self, refresh_token, client_id=CLIENT_ID):
        return self.client.post("/token", data={
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": client_id,
        })

    def login(self, **overrides):
        """Full authorize + redeem, returning the token response body"""
        code, code_verifier = self.issue_code(**overrides)
        response = self.redeem(code, code_verifier)
        assert response.status_code == 200, response.text
        return response.json()


@pytest.fixture
def flow(auth_client):
    return OAuthFlow(auth_client)
