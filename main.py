#!/usr/bin/env python3

import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from datetime import datetime, timezone
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, RedirectResponse

from auth import AuthorizationEngine, ClientRegistry, IdentityProvider
from config import Config
from errors import AuthorizeError, TokenError
from keys import KeyManager
from models import AuthorizationServerMetadata, HealthCheckResponse, JWKSResponse, TokenRequest
from store import InMemoryTokenStore
from tokens import TokenEngine

VERSION = "1.0.0"

logger = logging.getLogger(__name__)

NO_STORE_HEADERS = {"Cache-Control": "no-store", "Pragma": "no-cache"}


async def cleanup_expired_tokens(stores, interval: int):
    """Background task to purge expired codes and refresh tokens"""
    while True:
        await asyncio.sleep(interval)
        try:
            purged = sum(store.purge_expired() for store in stores)
            if purged:
                logger.info(f"Cleaned up {purged} expired codes/refresh tokens")
        except Exception as e:
            logger.error(f"Error in cleanup task: {e}")


def create_app(config: Optional[Config] = None, key_manager: Optional[KeyManager] = None) -> FastAPI:
    """Build the authorization server: /authorize, /token and the JWKS"""
    config = config or Config()
    key_manager = key_manager or KeyManager.from_config(config)

    clients = ClientRegistry.from_mapping(config.clients)
    identity = IdentityProvider(config.demo_user)
    codes = InMemoryTokenStore("authorization_codes")
    refresh_tokens = InMemoryTokenStore("refresh_tokens")

    authorization_engine = AuthorizationEngine(config, clients, codes, identity)
    token_engine = TokenEngine(config, key_manager, codes, refresh_tokens, identity)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Starting authorization server v{VERSION}")
        logger.info(f"Environment: {config.environment}")
        logger.info(f"Issuer: {config.issuer}")
        logger.info(f"Registered clients: {len(clients)}")

        cleanup_task = None
        if config.cleanup_interval > 0:
            cleanup_task = asyncio.create_task(
                cleanup_expired_tokens([codes, refresh_tokens], config.cleanup_interval)
            )
        yield

        logger.info("Shutting down authorization server")
        if cleanup_task:
            cleanup_task.cancel()
            with suppress(asyncio.CancelledError):
                await cleanup_task

    app = FastAPI(
        title="OAuth 2.0 Authorization Server",
        description="Authorization Code flow with PKCE, RS256 access tokens and refresh token rotation",
        version=VERSION,
        docs_url="/docs" if config.is_development else None,
        redoc_url="/redoc" if config.is_development else None,
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.key_manager = key_manager
    app.state.codes = codes
    app.state.refresh_tokens = refresh_tokens
    app.state.authorization_engine = authorization_engine
    app.state.token_engine = token_engine

    # Add security headers middleware
    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "no-referrer"

        # HTTPS enforcement in production
        if config.is_production:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"

        return response

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.allowed_origins,
        allow_credentials=False,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    @app.exception_handler(AuthorizeError)
    async def authorize_error_handler(request: Request, exc: AuthorizeError):
        return PlainTextResponse(exc.description, status_code=exc.status_code)

    @app.exception_handler(TokenError)
    async def token_error_handler(request: Request, exc: TokenError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=NO_STORE_HEADERS)

    @app.get("/health")
    async def health_check():
        """Health check endpoint with component status"""
        return HealthCheckResponse(
            status="healthy",
            service="authorization-server",
            version=VERSION,
            timestamp=datetime.now(timezone.utc).isoformat(),
            components={
                "signing_key": key_manager.key_id,
                "pending_codes": len(codes),
                "refresh_tokens": len(refresh_tokens),
            },
            environment=config.environment,
        )

    # OAuth 2.0 Authorization Server Metadata (RFC 8414)
    @app.get("/.well-known/oauth-authorization-server")
    async def oauth_authorization_server_metadata():
        return AuthorizationServerMetadata(
            issuer=config.issuer,
            authorization_endpoint=f"{config.issuer}/authorize",
            token_endpoint=f"{config.issuer}/token",
            jwks_uri=f"{config.issuer}/.well-known/jwks.json",
            scopes_supported=sorted(set(config.client_scope.split()) | {config.required_scope}),
        )

    @app.get("/.well-known/jwks.json")
    async def jwks():
        """Publish the public verification key"""
        return JWKSResponse(keys=[key_manager.export_public_key()])

    @app.get("/authorize")
    async def oauth_authorize(
        response_type: Optional[str] = None,
        client_id: Optional[str] = None,
        redirect_uri: Optional[str] = None,
        scope: Optional[str] = None,
        state: Optional[str] = None,
        code_challenge: Optional[str] = None,
        code_challenge_method: Optional[str] = None,
    ):
        """OAuth 2.0 Authorization endpoint with mandatory PKCE (S256)"""
        redirect_url = await authorization_engine.authorize(
            response_type=response_type,
            client_id=client_id,
            redirect_uri=redirect_uri,
            scope=scope,
            state=state,
            code_challenge=code_challenge,
            code_challenge_method=code_challenge_method,
        )
        return RedirectResponse(url=redirect_url, status_code=302)

    @app.post("/token")
    async def oauth_token(request: Request):
        """OAuth 2.0 Token endpoint: authorization_code and refresh_token grants"""
        form_data = await request.form()
        token_request = TokenRequest(**{key: value for key, value in form_data.items() if isinstance(value, str)})

        token_response = await token_engine.token(token_request)
        return JSONResponse(content=token_response.model_dump(exclude_none=True), headers=NO_STORE_HEADERS)

    return app


# Configure logging
config = Config()
logging.basicConfig(level=config.log_level, format=config.log_format)

app = create_app(config)

if __name__ == "__main__":
    print(f"🚀 Starting OAuth 2.0 Authorization Server v{VERSION}")
    print(f"📊 Environment: {config.environment}")
    print(f"🌐 Issuer: {config.issuer}")
    print(f"🔑 Signing key: {config.signing_key_path or 'ephemeral (development)'}")
    print(f"📋 JWKS: {config.issuer}/.well-known/jwks.json")

    uvicorn.run(
        app,
        host=config.host,
        port=config.port,
        log_level=config.log_level.lower(),
        access_log=True,
    )
