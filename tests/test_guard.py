import asyncio
import base64
import json
import time

import httpx
import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa

from errors import InsufficientScope, KeySetUnavailable, Unauthenticated
from guard import LocalKeySet, RemoteKeySet, ResourceGuard
from keys import KeyManager

from conftest import CLIENT_ID, ISSUER


def make_claims(**overrides):
    now = int(time.time())
    claims = {
        "iss": ISSUER,
        "aud": CLIENT_ID,
        "sub": "alice",
        "scope": "api.read openid",
        "name": "Alice Example",
        "email": "alice@example.com",
        "iat": now,
        "exp": now + 900,
    }
    claims.update(overrides)
    return {key: value for key, value in claims.items() if value is not None}


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


def tamper(token, **changes):
    header, payload, signature = token.split(".")
    claims = json.loads(base64.urlsafe_b64decode(payload + "=" * (-len(payload) % 4)))
    claims.update(changes)
    forged = base64.urlsafe_b64encode(json.dumps(claims).encode()).decode().rstrip("=")
    return f"{header}.{forged}.{signature}"


def jwks_client(auth_app, requests):
    async def record(request):
        requests.append(request.url.path)

    return httpx.AsyncClient(
        transport=httpx.ASGITransport(app=auth_app),
        base_url="http://auth.test",
        event_hooks={"request": [record]},
    )


@pytest.fixture
def guard(key_manager):
    return ResourceGuard(LocalKeySet(key_manager), issuer=ISSUER, audience=CLIENT_ID)


@pytest.mark.asyncio
async def test_valid_token_round_trip(guard, key_manager):
    claims = await guard.authenticate(f"Bearer {key_manager.sign(make_claims())}")
    assert claims["sub"] == "alice"
    assert claims["scope"] == "api.read openid"


@pytest.mark.asyncio
@pytest.mark.parametrize("header", [None, "", "Bearer", "Bearer   ", "Basic dXNlcjpwYXNz", "token-without-scheme"])
async def test_missing_or_malformed_header(guard, header):
    with pytest.raises(Unauthenticated) as exc_info:
        await guard.authenticate(header)
    assert exc_info.value.description == "Missing or invalid Authorization header"


@pytest.mark.asyncio
@pytest.mark.parametrize("changes", [
    {"scope": "api.read api.admin"},
    {"sub": "mallory"},
    {"aud": "other-client"},
    {"exp": 9999999999},
])
async def test_tampered_claims_rejected(guard, key_manager, changes):
    token = tamper(key_manager.sign(make_claims()), **changes)
    with pytest.raises(Unauthenticated) as exc_info:
        await guard.authenticate(f"Bearer {token}")
    assert exc_info.value.description == "Invalid token"


@pytest.mark.asyncio
@pytest.mark.parametrize("overrides", [
    {"exp": int(time.time()) - 10},
    {"iss": "http://evil.example"},
    {"aud": "other-client"},
    {"sub": None},
    {"exp": None},
])
async def test_invalid_claims_rejected(guard, key_manager, overrides):
    token = key_manager.sign(make_claims(**overrides))
    with pytest.raises(Unauthenticated):
        await guard.authenticate(f"Bearer {token}")


@pytest.mark.asyncio
async def test_foreign_key_with_same_kid_rejected(guard):
    impostor = KeyManager.generate("test-key-1")
    with pytest.raises(Unauthenticated):
        await guard.authenticate(f"Bearer {impostor.sign(make_claims())}")


@pytest.mark.asyncio
async def test_unknown_kid_rejected(guard):
    other = KeyManager.generate("rotated-away")
    with pytest.raises(Unauthenticated):
        await guard.authenticate(f"Bearer {other.sign(make_claims())}")


@pytest.mark.asyncio
async def test_unsigned_token_rejected(guard):
    token = jwt.encode(make_claims(), None, algorithm="none", headers={"kid": "test-key-1"})
    with pytest.raises(Unauthenticated):
        await guard.authenticate(f"Bearer {token}")


@pytest.mark.asyncio
async def test_garbage_token_rejected(guard):
    with pytest.raises(Unauthenticated):
        await guard.authenticate("Bearer not.a.jwt")


def test_authorize_scope(guard):
    guard.authorize_scope({"scope": "openid api.read"}, "api.read")

    with pytest.raises(InsufficientScope) as exc_info:
        guard.authorize_scope({"scope": "openid api.reader"}, "api.read")
    assert exc_info.value.required_scope == "api.read"

    with pytest.raises(InsufficientScope):
        guard.authorize_scope({}, "api.read")


def test_profile_requires_header(resource_client):
    response = resource_client.get("/profile")
    assert response.status_code == 401
    assert response.json()["error"] == "unauthenticated"
    assert response.json()["error_description"] == "Missing or invalid Authorization header"
    assert response.headers["www-authenticate"].startswith("Bearer")


def test_profile_rejects_invalid_token(resource_client, key_manager):
    token = key_manager.sign(make_claims(exp=int(time.time()) - 1))
    response = resource_client.get("/profile", headers=bearer(token))
    assert response.status_code == 401
    assert response.json()["error_description"] == "Invalid token"
    assert 'error="invalid_token"' in response.headers["www-authenticate"]


def test_profile_requires_scope(resource_client, key_manager):
    token = key_manager.sign(make_claims(scope="openid profile"))
    response = resource_client.get("/profile", headers=bearer(token))
    assert response.status_code == 403
    body = response.json()
    assert body["error"] == "insufficient_scope"
    assert body["required_scope"] == "api.read"
    assert "api.read" in body["error_description"]


def test_profile_with_scope(resource_client, key_manager):
    response = resource_client.get("/profile", headers=bearer(key_manager.sign(make_claims())))
    assert response.status_code == 200
    assert response.json() == {
        "message": "Protected profile data",
        "user": {
            "sub": "alice",
            "name": "Alice Example",
            "email": "alice@example.com",
            "scope": "api.read openid",
        },
    }


@pytest.mark.asyncio
async def test_remote_key_set_fetches_and_caches(auth_app, key_manager):
    requests = []
    key_set = RemoteKeySet("http://auth.test/.well-known/jwks.json", http_client=jwks_client(auth_app, requests))
    guard = ResourceGuard(key_set, issuer=ISSUER, audience=CLIENT_ID)

    try:
        for _ in range(3):
            claims = await guard.authenticate(f"Bearer {key_manager.sign(make_claims())}")
            assert claims["sub"] == "alice"
        assert requests == ["/.well-known/jwks.json"]

        # Unknown kid triggers a single refetch before failing
        other = KeyManager.generate("unknown-kid")
        with pytest.raises(Unauthenticated):
            await guard.authenticate(f"Bearer {other.sign(make_claims())}")
        assert len(requests) == 2
    finally:
        await key_set.close()


@pytest.mark.asyncio
async def test_remote_key_set_unavailable():
    def unavailable(request):
        return httpx.Response(503)

    key_set = RemoteKeySet(
        "http://auth.test/.well-known/jwks.json",
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(unavailable)),
    )
    with pytest.raises(KeySetUnavailable):
        await key_set.get_signing_key("test-key-1")
    await key_set.close()


@pytest.mark.asyncio
async def test_unknown_kid_refetch_is_rate_limited(auth_app, key_manager):
    requests = []
    key_set = RemoteKeySet("http://auth.test/.well-known/jwks.json", http_client=jwks_client(auth_app, requests))
    guard = ResourceGuard(key_set, issuer=ISSUER, audience=CLIENT_ID)

    try:
        await guard.authenticate(f"Bearer {key_manager.sign(make_claims())}")

        impostor = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        for i in range(20):
            token = jwt.encode(make_claims(), impostor, algorithm="RS256", headers={"kid": f"unknown-{i}"})
            with pytest.raises(Unauthenticated):
                await guard.authenticate(f"Bearer {token}")

        assert len(requests) == 2

        # Known keys keep verifying from the cache
        await guard.authenticate(f"Bearer {key_manager.sign(make_claims())}")
        assert len(requests) == 2
    finally:
        await key_set.close()


@pytest.mark.asyncio
async def test_unknown_kid_refetch_without_cooldown(auth_app):
    requests = []
    key_set = RemoteKeySet(
        "http://auth.test/.well-known/jwks.json",
        http_client=jwks_client(auth_app, requests),
        refetch_cooldown=0,
    )

    try:
        for kid in ["rotated-1", "rotated-2"]:
            with pytest.raises(jwt.InvalidTokenError):
                await key_set.get_signing_key(kid)
        assert len(requests) == 3
    finally:
        await key_set.close()


def test_remote_key_set_built_outside_event_loop(auth_app, key_manager):
    requests = []
    key_set = RemoteKeySet("http://auth.test/.well-known/jwks.json", http_client=jwks_client(auth_app, requests))

    async def load_concurrently():
        try:
            return await asyncio.gather(*(key_set.get_signing_key("test-key-1") for _ in range(5)))
        finally:
            await key_set.close()

    keys = asyncio.run(load_concurrently())

    expected = key_manager.public_key.public_numbers()
    assert all(key.public_numbers() == expected for key in keys)
    assert requests == ["/.well-known/jwks.json"]
