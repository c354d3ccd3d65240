#!/usr/bin/env python3

"""
Demo OAuth client: runs the Authorization Code + PKCE flow against the
authorization server and calls the protected resource with the result.
"""

import html
import logging
from contextlib import asynccontextmanager
from typing import Optional
from urllib.parse import urlencode

import httpx
import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse, RedirectResponse

from config import Config
from pkce import compute_s256_challenge, generate_code_verifier, generate_state

logger = logging.getLogger(__name__)

STATE_COOKIE = "oauth_state"
VERIFIER_COOKIE = "code_verifier"


def _page(title: str, body: str, status_code: int = 200) -> HTMLResponse:
    return HTMLResponse(f"<h1>{html.escape(title)}</h1>\n{body}", status_code=status_code)


def create_client_app(
    config: Optional[Config] = None,
    auth_http: Optional[httpx.AsyncClient] = None,
    resource_http: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    config = config or Config()
    auth_http = auth_http or httpx.AsyncClient(base_url=config.issuer, timeout=config.http_timeout)
    resource_http = resource_http or httpx.AsyncClient(base_url=config.resource_url, timeout=config.http_timeout)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Demo client {config.client_id} using {config.issuer}")
        yield
        await auth_http.aclose()
        await resource_http.aclose()

    app = FastAPI(title="OAuth 2.0 PKCE Demo Client", docs_url=None, redoc_url=None, lifespan=lifespan)

    def store_tokens(response, tokens: dict):
        response.set_cookie("access_token", tokens["access_token"], httponly=True, samesite="lax")
        if tokens.get("refresh_token"):
            response.set_cookie("refresh_token", tokens["refresh_token"], httponly=True, samesite="lax")

    async def request_tokens(form: dict) -> Optional[dict]:
        try:
            response = await auth_http.post("/token", data=form)
        except httpx.HTTPError as e:
            logger.error(f"Token endpoint unreachable: {e}")
            return None

        if response.status_code != 200:
            logger.warning(f"Token request failed ({response.status_code}): {response.text}")
            return None
        return response.json()

    @app.get("/")
    async def home():
        return _page(
            "OAuth 2.0 PKCE Demo Client",
            "<p>Click the link below to log in via the Authorization Server.</p>\n"
            '<a href="/login">Log in with Authorization Server</a>',
        )

    @app.get("/login")
    async def login():
        """Start the Authorization Code flow with a fresh verifier and state"""
        code_verifier = generate_code_verifier()
        state = generate_state()

        query = urlencode({
            "response_type": "code",
            "client_id": config.client_id,
            "redirect_uri": config.client_redirect_uri,
            "code_challenge_method": "S256",
            "code_challenge": compute_s256_challenge(code_verifier),
            "scope": config.client_scope,
            "state": state,
        })
        response = RedirectResponse(f"{config.issuer}/authorize?{query}", status_code=302)
        response.set_cookie(VERIFIER_COOKIE, code_verifier, httponly=True, samesite="lax")
        response.set_cookie(STATE_COOKIE, state, httponly=True, samesite="lax")
        return response

    @app.get("/callback")
    async def callback(request: Request, code: Optional[str] = None, state: Optional[str] = None):
        """Handle the redirect back from the authorization server"""
        if not code:
            return _page("Login failed", "<p>Authorization code not found.</p>", 400)

        stored_state = request.cookies.get(STATE_COOKIE)
        if not state or state != stored_state:
            logger.warning("Callback rejected: state mismatch")
            return _page("Login failed", "<p>Invalid state parameter.</p>", 400)

        tokens = await request_tokens({
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": config.client_redirect_uri,
            "client_id": config.client_id,
            "code_verifier": request.cookies.get(VERIFIER_COOKIE, ""),
        })
        if tokens is None:
            return _page("Login failed", "<p>Token exchange failed.</p>", 502)

        response = _page(
            "Authorization Successful",
            f"<p>Expires In: {int(tokens['expires_in'])} seconds</p>\n"
            f"<p>Scope: {html.escape(tokens.get('scope', ''))}</p>\n"
            '<a href="/profile">View Profile Information</a><br/>\n'
            '<a href="/refresh">Refresh Access Token</a>',
        )
        store_tokens(response, tokens)
        response.delete_cookie(STATE_COOKIE)
        response.delete_cookie(VERIFIER_COOKIE)
        return response

    @app.get("/profile")
    async def profile(request: Request):
        """Fetch the protected profile with the stored access token"""
        access_token = request.cookies.get("access_token")
        if not access_token:
            return _page("Not logged in", "<p>Access token not found. Please log in.</p>", 401)

        try:
            api_response = await resource_http.get("/profile", headers={"Authorization": f"Bearer {access_token}"})
        except httpx.HTTPError as e:
            logger.error(f"Resource server unreachable: {e}")
            return _page("Error", "<p>Failed to fetch profile information.</p>", 502)

        if api_response.status_code != 200:
            status_code = api_response.status_code if api_response.status_code in (401, 403) else 502
            return _page("Error", f"<p>Resource server returned {api_response.status_code}.</p>", status_code)

        return _page(
            "User Profile",
            f"<pre>{html.escape(api_response.text)}</pre>\n<a href=\"/\">Home</a>",
        )

    @app.get("/refresh")
    async def refresh(request: Request):
        """Rotate the refresh token and obtain a new access token"""
        refresh_token = request.cookies.get("refresh_token")
        if not refresh_token:
            return _page("Not logged in", "<p>Refresh token not found. Please log in.</p>", 401)

        tokens = await request_tokens({
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": config.client_id,
        })
        if tokens is None:
            response = _page("Refresh failed", '<p>Please <a href="/login">log in</a> again.</p>', 401)
            response.delete_cookie("refresh_token")
            return response

        response = _page(
            "Token Refreshed",
            f"<p>Expires In: {int(tokens['expires_in'])} seconds</p>\n"
            '<a href="/profile">View Profile Information</a>',
        )
        store_tokens(response, tokens)
        return response

    return app


# Configure logging
config = Config()
logging.basicConfig(level=config.log_level, format=config.log_format)

app = create_client_app(config)

if __name__ == "__main__":
    print(f"🔗 Starting demo client on port {config.client_port}")
    print(f"🔐 Authorization server: {config.issuer}")
    print(f"🛡️  Resource server: {config.resource_url}")

    uvicorn.run(app, host=config.host, port=config.client_port, log_level=config.log_level.lower())
