#!/usr/bin/env python3

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import uvicorn
from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse

from config import Config
from errors import OAuthError, auth_headers
from guard import RemoteKeySet, ResourceGuard
from models import HealthCheckResponse, ProfileResponse, ProfileUser

VERSION = "1.0.0"

logger = logging.getLogger(__name__)


def create_resource_app(config: Optional[Config] = None, key_set=None) -> FastAPI:
    """
    Build the protected API. Without an explicit key set the public key is
    fetched from the authorization server's JWKS endpoint.
    """
    config = config or Config()
    owns_key_set = key_set is None
    if owns_key_set:
        key_set = RemoteKeySet(
            config.jwks_url,
            cache_ttl=config.jwks_cache_ttl,
            refetch_cooldown=config.jwks_refetch_cooldown,
            timeout=config.http_timeout,
        )

    guard = ResourceGuard(
        key_set,
        issuer=config.issuer,
        audience=config.resource_audience,
        algorithms=[config.signing_algorithm],
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Starting resource server v{VERSION} (issuer={config.issuer}, audience={config.resource_audience})")
        yield
        if owns_key_set:
            await key_set.close()

    app = FastAPI(
        title="Protected Resource Server",
        version=VERSION,
        docs_url="/docs" if config.is_development else None,
        redoc_url=None,
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.guard = guard

    @app.exception_handler(OAuthError)
    async def oauth_error_handler(request: Request, exc: OAuthError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=auth_headers(exc))

    @app.get("/health")
    async def health_check():
        return HealthCheckResponse(
            status="healthy",
            service="resource-server",
            version=VERSION,
            timestamp=datetime.now(timezone.utc).isoformat(),
            components={"jwks": config.jwks_url if owns_key_set else "local"},
            environment=config.environment,
        )

    @app.get("/profile", response_model=ProfileResponse)
    async def profile(claims: Dict[str, Any] = Depends(guard.require_scope(config.required_scope))):
        """Protected profile data"""
        return ProfileResponse(user=ProfileUser(
            sub=claims["sub"],
            name=claims.get("name"),
            email=claims.get("email"),
            scope=claims.get("scope", ""),
        ))

    return app


# Configure logging
config = Config()
logging.basicConfig(level=config.log_level, format=config.log_format)

app = create_resource_app(config)

if __name__ == "__main__":
    print(f"🛡️  Starting Resource Server v{VERSION}")
    print(f"🔑 JWKS: {config.jwks_url}")
    print(f"🎯 Audience: {config.resource_audience}, required scope: {config.required_scope}")

    uvicorn.run(app, host=config.host, port=config.resource_port, log_level=config.log_level.lower())
