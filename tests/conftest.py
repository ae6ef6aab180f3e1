"""
Shared pytest fixtures for the idwallet test suite.
"""

import pytest
from aiohttp import web
from ecdsa import SECP256k1, SigningKey

from idwallet_core import crypto_utils
from idwallet_core.hub import InMemoryHubStorage
from idwallet_core.session import SessionManager, SessionStore
from idwallet_core.tokens import encode_token

# BIP-39 test vector: 32 zero bytes
ZERO_SECRET = bytes(32)
ZERO_PHRASE = " ".join(["abandon"] * 23 + ["art"])


@pytest.fixture(autouse=True)
def fast_kdf(monkeypatch):
    """Cheap password KDF so lock/unlock tests stay fast."""
    monkeypatch.setattr(crypto_utils, "KDF_ITERATIONS", 1_000)


@pytest.fixture
def secret():
    """Deterministic 256-bit master secret."""
    return bytearray(range(32))


@pytest.fixture
def hub():
    return InMemoryHubStorage()


@pytest.fixture
def store():
    return SessionStore()


@pytest.fixture
def manager(store, hub):
    return SessionManager(store, hub)


@pytest.fixture
def transit_key():
    """(private_key_bytes, compressed_public_key_hex) of an app transit key."""
    sk = SigningKey.generate(curve=SECP256k1)
    return sk.to_string(), sk.get_verifying_key().to_string("compressed").hex()


def make_auth_request(**overrides) -> str:
    """Unsigned auth request token for app.example."""
    payload = {
        "redirect_uri": "https://app.example/",
        "manifest_uri": "https://app.example/manifest.json",
        "public_keys": ["pk1"],
        "scopes": ["store_write"],
    }
    payload.update(overrides)
    return encode_token({k: v for k, v in payload.items() if v is not None})


def make_hub_app(files):
    """aiohttp app speaking the hub read/write protocol over *files*."""
    async def hub_info(request):
        return web.json_response({
            "read_url_prefix": str(request.url.origin()) + "/read/",
            "challenge_text": "challenge",
        })

    async def store(request):
        if not request.headers.get("Authorization", "").startswith("bearer v1:"):
            return web.Response(status=401)
        files[(request.match_info["address"], request.match_info["path"])] = await request.read()
        return web.json_response({"publicURL": "ok"})

    async def read(request):
        key = (request.match_info["address"], request.match_info["path"])
        if key not in files:
            return web.Response(status=404)
        return web.Response(body=files[key])

    async def broken(request):
        return web.Response(status=500)

    app = web.Application()
    app.router.add_get("/hub_info", hub_info)
    app.router.add_post("/store/{address}/{path}", store)
    app.router.add_get("/read/{address}/{path}", read)
    app.router.add_post("/broken/store/{address}/{path}", broken)
    return app
