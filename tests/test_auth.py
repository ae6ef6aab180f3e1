"""
Tests for idwallet_core.auth: the application sign-in handshake.

Covers:
  - decode_auth_request parsing and MalformedToken cases
  - App metadata from appDetails or a single manifest fetch
  - Manifest failures, caching and cancellation
  - build_auth_response: account checks, hub registration, signed payload,
    encrypted app key, deterministic username blanking
  - Only the signed-in wallet signs, hub writes serialised with the
    session's background persistence
  - Each request answered once; metadata cache eviction and bound
"""

import asyncio
import json

import pytest
from aiohttp import ClientSession, web
from aiohttp.test_utils import TestServer
from conftest import make_auth_request

from idwallet_core.account import get_app_private_key
from idwallet_core.auth import (
    AUTH_RESPONSE_VERSION,
    METADATA_CACHE_SIZE,
    AppMetadata,
    AuthHandshake,
    AuthRequestContext,
    SignedAuthResponse,
    decode_auth_request,
)
from idwallet_core.config import IdWalletConfig
from idwallet_core.crypto_utils import decrypt_ecies
from idwallet_core.errors import (
    AccountNotFound,
    MalformedToken,
    ManifestUnavailable,
    NotAuthenticated,
    RemoteStorageFailure,
)
from idwallet_core.hub import InMemoryHubStorage, create_hub_config, fetch_wallet_config
from idwallet_core.session import Locked, SessionManager, SessionStore
from idwallet_core.tokens import decode_token, verify_token

APP = AppMetadata("App", "https://app.example/icon.png", "https://app.example")

MANIFEST = {
    "name": "Example App",
    "icons": [{"src": "https://app.example/logo.png"}],
    "start_url": "https://app.example/",
}


class TestDecodeAuthRequest:
    def test_valid_request(self):
        token = make_auth_request()
        ctx = decode_auth_request(token)
        assert ctx.redirect_uri == "https://app.example/"
        assert ctx.manifest_uri == "https://app.example/manifest.json"
        assert ctx.scopes == ("store_write",)
        assert ctx.requested_public_key == "pk1"
        assert ctx.raw_token == token
        assert ctx.app_origin == "https://app.example"

    def test_default_manifest_uri(self):
        ctx = decode_auth_request(make_auth_request(
            redirect_uri="https://app.example/callback", manifest_uri=None,
        ))
        assert ctx.manifest_uri == "https://app.example/manifest.json"

    def test_scopes_deduplicated(self):
        ctx = decode_auth_request(make_auth_request(
            scopes=["store_write", "publish_data", "store_write"],
        ))
        assert ctx.scopes == ("store_write", "publish_data")

    def test_missing_scopes(self):
        ctx = decode_auth_request(make_auth_request(scopes=None))
        assert ctx.scopes == ()

    def test_app_details(self):
        ctx = decode_auth_request(make_auth_request(
            appDetails={"name": "Named", "icon": "https://app.example/i.png"},
        ))
        assert (ctx.app_name, ctx.app_icon) == ("Named", "https://app.example/i.png")

    def test_handshake_exposes_decoder(self, manager):
        handshake = AuthHandshake(manager)
        assert isinstance(handshake.decode_auth_request(make_auth_request()),
                          AuthRequestContext)

    @pytest.mark.parametrize("overrides", [
        {"redirect_uri": None},
        {"redirect_uri": "/relative"},
        {"redirect_uri": 42},
        {"public_keys": None},
        {"public_keys": []},
        {"scopes": "store_write"},
    ])
    def test_malformed_payload(self, overrides):
        with pytest.raises(MalformedToken):
            decode_auth_request(make_auth_request(**overrides))

    @pytest.mark.parametrize("raw", ["", "abc", "a.b", "!!.??.", None])
    def test_undecodable_token(self, raw):
        with pytest.raises(MalformedToken):
            decode_auth_request(raw)


def _manifest_app(calls, body=None, status=200, gate=None):
    async def manifest(request):
        calls.append(request.path)
        if gate is not None:
            gate["started"].set()
            await gate["release"].wait()
        if status != 200:
            return web.Response(status=status)
        if isinstance(body, str):
            return web.Response(text=body, content_type="application/json")
        return web.json_response(MANIFEST if body is None else body)

    app = web.Application()
    app.router.add_get("/manifest.json", manifest)
    return app


def _ctx_for(server, **overrides):
    token = make_auth_request(manifest_uri=str(server.make_url("/manifest.json")), **overrides)
    return decode_auth_request(token)


class TestResolveAppMetadata:
    @pytest.mark.asyncio
    async def test_single_manifest_fetch(self, manager):
        calls = []
        async with TestServer(_manifest_app(calls)) as server:
            handshake = AuthHandshake(manager)
            ctx = _ctx_for(server)
            first = await handshake.resolve_app_metadata(ctx)
            second = await handshake.resolve_app_metadata(ctx)
        assert calls == ["/manifest.json"]
        assert first == second
        assert first.name == "Example App"
        assert first.icon_url == "https://app.example/logo.png"
        assert first.origin_url == "https://app.example"

    @pytest.mark.asyncio
    async def test_shared_client_session(self, manager):
        calls = []
        async with TestServer(_manifest_app(calls)) as server, ClientSession() as http:
            handshake = AuthHandshake(manager, http=http)
            metadata = await handshake.resolve_app_metadata(_ctx_for(server))
        assert metadata.name == "Example App"
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_app_details_skip_fetch(self, manager):
        calls = []
        async with TestServer(_manifest_app(calls)) as server:
            handshake = AuthHandshake(manager)
            ctx = _ctx_for(server, appDetails={"name": "Named", "icon": "https://i"})
            metadata = await handshake.resolve_app_metadata(ctx)
        assert calls == []
        assert metadata == AppMetadata("Named", "https://i", "https://app.example")

    @pytest.mark.asyncio
    async def test_partial_app_details_fetch(self, manager):
        calls = []
        async with TestServer(_manifest_app(calls)) as server:
            handshake = AuthHandshake(manager)
            ctx = _ctx_for(server, appDetails={"name": "Named"})
            metadata = await handshake.resolve_app_metadata(ctx)
        assert len(calls) == 1
        assert metadata.name == "Example App"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kwargs", [
        {"status": 404},
        {"status": 500},
        {"body": "{not json"},
        {"body": ["not", "an", "object"]},
        {"body": {"name": "No icons"}},
        {"body": {"name": "Empty icons", "icons": []}},
        {"body": {"name": 7, "icons": [{"src": "https://i"}]}},
    ])
    async def test_manifest_unavailable(self, manager, kwargs):
        calls = []
        async with TestServer(_manifest_app(calls, **kwargs)) as server:
            handshake = AuthHandshake(manager)
            with pytest.raises(ManifestUnavailable):
                await handshake.resolve_app_metadata(_ctx_for(server))

    @pytest.mark.asyncio
    async def test_failure_not_cached(self, manager):
        calls = []
        async with TestServer(_manifest_app(calls, status=404)) as server:
            handshake = AuthHandshake(manager)
            ctx = _ctx_for(server)
            for _ in range(2):
                with pytest.raises(ManifestUnavailable):
                    await handshake.resolve_app_metadata(ctx)
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_unreachable_manifest(self, manager):
        async with TestServer(web.Application()) as server:
            url = str(server.make_url("/manifest.json"))
        handshake = AuthHandshake(manager)
        ctx = decode_auth_request(make_auth_request(manifest_uri=url))
        with pytest.raises(ManifestUnavailable):
            await handshake.resolve_app_metadata(ctx)

    @pytest.mark.asyncio
    async def test_cancelled_fetch_commits_nothing(self, manager):
        calls = []
        gate = {"started": asyncio.Event(), "release": asyncio.Event()}
        async with TestServer(_manifest_app(calls, gate=gate)) as server:
            handshake = AuthHandshake(manager)
            ctx = _ctx_for(server)
            task = asyncio.create_task(handshake.resolve_app_metadata(ctx))
            await gate["started"].wait()
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
            gate["release"].set()

            metadata = await handshake.resolve_app_metadata(ctx)
        assert len(calls) == 2
        assert metadata.name == "Example App"


async def _sign_in(manager, secret):
    await manager.restore_wallet(secret)
    return manager


class TestBuildAuthResponse:
    @pytest.mark.asyncio
    async def test_unknown_account_touches_nothing(self, manager, secret, hub, transit_key):
        signed_in = await _sign_in(manager, secret)
        handshake = AuthHandshake(signed_in)
        ctx = decode_auth_request(make_auth_request(public_keys=[transit_key[1]]))
        reads, writes = list(hub.reads), list(hub.writes)
        with pytest.raises(AccountNotFound):
            await handshake.build_auth_response(signed_in.wallet, 1, ctx, APP)
        assert hub.reads == reads
        assert hub.writes == writes

    @pytest.mark.asyncio
    async def test_signed_payload(self, manager, secret, hub, transit_key):
        signed_in = await _sign_in(manager, secret)
        wallet = signed_in.wallet
        account = wallet.accounts[0]
        handshake = AuthHandshake(signed_in)
        ctx = decode_auth_request(make_auth_request(public_keys=[transit_key[1]]))

        response = await handshake.build_auth_response(wallet, 0, ctx, APP)
        assert isinstance(response, SignedAuthResponse)
        assert verify_token(response.token, account.data_public_key)

        payload = decode_token(response.token).payload
        assert payload["iss"] == f"did:btc-addr:{account.identity_address}"
        assert payload["public_keys"] == [account.data_public_key.hex()]
        assert payload["appDomain"] == "https://app.example"
        assert payload["scopes"] == ["store_write"]
        assert payload["transitPublicKey"] == transit_key[1]
        assert payload["hubUrl"] == hub.hub_url
        assert payload["version"] == AUTH_RESPONSE_VERSION
        assert payload["username"] is None
        assert payload["exp"] - payload["iat"] == IdWalletConfig().auth.response_ttl_seconds
        assert payload["profile_url"].endswith(f"{account.identity_address}/profile.json")

    @pytest.mark.asyncio
    async def test_app_key_encrypted_to_transit_key(self, manager, secret, hub, transit_key):
        signed_in = await _sign_in(manager, secret)
        wallet = signed_in.wallet
        handshake = AuthHandshake(signed_in)
        ctx = decode_auth_request(make_auth_request(public_keys=[transit_key[1]]))

        response = await handshake.build_auth_response(wallet, 0, ctx, APP)
        envelope = json.loads(bytes.fromhex(decode_token(response.token).payload["private_key"]))
        app_key = decrypt_ecies(transit_key[0], envelope)
        assert app_key == get_app_private_key(wallet.accounts[0], "https://app.example").hex().encode()

    @pytest.mark.asyncio
    async def test_app_registered_in_config(self, manager, secret, hub, transit_key):
        signed_in = await _sign_in(manager, secret)
        wallet = signed_in.wallet
        await signed_in.create_account()
        await signed_in.wait_for_background()
        handshake = AuthHandshake(signed_in)
        ctx = decode_auth_request(make_auth_request(public_keys=[transit_key[1]]))

        await handshake.build_auth_response(wallet, 1, ctx, APP)
        config = await fetch_wallet_config(wallet, hub, await create_hub_config(wallet, hub))
        entry = config.accounts[1].apps["https://app.example"]
        assert entry.name == "App"
        assert entry.scopes == ["store_write"]
        assert entry.app_icon == APP.icon_url
        assert "https://app.example" not in config.accounts[0].apps

    @pytest.mark.asyncio
    async def test_sets_current_account(self, manager, secret, hub, transit_key):
        signed_in = await _sign_in(manager, secret)
        await signed_in.create_account()
        await signed_in.wait_for_background()
        assert signed_in.current_account_index == 1
        handshake = AuthHandshake(signed_in)
        ctx = decode_auth_request(make_auth_request(public_keys=[transit_key[1]]))

        response = await handshake.build_auth_response(signed_in.wallet, 0, ctx, APP)
        assert response.account_index == 0
        assert signed_in.current_account_index == 0

    @pytest.mark.asyncio
    async def test_redirect_url(self, manager, secret, hub, transit_key):
        signed_in = await _sign_in(manager, secret)
        handshake = AuthHandshake(signed_in)
        ctx = decode_auth_request(make_auth_request(public_keys=[transit_key[1]]))
        response = await handshake.build_auth_response(signed_in.wallet, 0, ctx, APP)
        assert response.redirect_url().startswith("https://app.example/?authResponse=")

        ctx = decode_auth_request(make_auth_request(
            redirect_uri="https://app.example/cb?x=1", public_keys=[transit_key[1]],
        ))
        response = await handshake.build_auth_response(signed_in.wallet, 0, ctx, APP)
        assert response.redirect_url().startswith("https://app.example/cb?x=1&authResponse=")

    @pytest.mark.asyncio
    async def test_username_included(self, manager, secret, hub, transit_key):
        signed_in = await _sign_in(manager, secret)
        signed_in.wallet.accounts[0].username = "alice.id"
        handshake = AuthHandshake(signed_in)
        ctx = decode_auth_request(make_auth_request(public_keys=[transit_key[1]]))
        response = await handshake.build_auth_response(signed_in.wallet, 0, ctx, APP)
        assert decode_token(response.token).payload["username"] == "alice.id"

    @pytest.mark.asyncio
    async def test_deterministic_signing_blanks_username(self, manager, secret, hub, transit_key):
        signed_in = await _sign_in(manager, secret)
        account = signed_in.wallet.accounts[0]
        account.username = "alice.id"
        config = IdWalletConfig()
        config.auth.deterministic_signing = True
        handshake = AuthHandshake(signed_in, config)
        ctx = decode_auth_request(make_auth_request(public_keys=[transit_key[1]]))

        response = await handshake.build_auth_response(signed_in.wallet, 0, ctx, APP)
        assert decode_token(response.token).payload["username"] is None
        assert account.username == "alice.id"

    @pytest.mark.asyncio
    async def test_username_restored_when_signing_fails(self, manager, secret, hub):
        signed_in = await _sign_in(manager, secret)
        account = signed_in.wallet.accounts[0]
        account.username = "alice.id"
        config = IdWalletConfig()
        config.auth.deterministic_signing = True
        handshake = AuthHandshake(signed_in, config)
        ctx = decode_auth_request(make_auth_request())

        with pytest.raises(MalformedToken):
            await handshake.build_auth_response(signed_in.wallet, 0, ctx, APP)
        assert account.username == "alice.id"

    @pytest.mark.asyncio
    async def test_hub_failure(self, secret, transit_key):
        class DownHub(InMemoryHubStorage):
            async def get(self, config, path):
                raise RemoteStorageFailure("hub unreachable")

        hub = DownHub()
        manager = SessionManager(SessionStore(), hub)
        await manager.restore_wallet(secret)
        handshake = AuthHandshake(manager)
        ctx = decode_auth_request(make_auth_request(public_keys=[transit_key[1]]))
        with pytest.raises(RemoteStorageFailure):
            await handshake.build_auth_response(manager.wallet, 0, ctx, APP)
        assert manager.current_account_index == 0


class _YieldingHub(InMemoryHubStorage):
    """Hands control back to the event loop on every read and write."""

    async def get(self, config, path):
        await asyncio.sleep(0)
        return await super().get(config, path)

    async def put(self, config, path, data, content_type="application/octet-stream"):
        await asyncio.sleep(0)
        await super().put(config, path, data, content_type)


class _FlakyHub(InMemoryHubStorage):
    down = False

    async def put(self, config, path, data, content_type="application/octet-stream"):
        if self.down:
            raise RemoteStorageFailure("hub unreachable")
        await super().put(config, path, data, content_type)


class TestSessionDiscipline:
    @pytest.mark.asyncio
    async def test_new_account_sign_in_keeps_app_entry(self, secret, transit_key):
        hub = _YieldingHub()
        manager = SessionManager(SessionStore(), hub)
        await manager.restore_wallet(secret)
        wallet = manager.wallet
        handshake = AuthHandshake(manager)
        ctx = decode_auth_request(make_auth_request(public_keys=[transit_key[1]]))

        await manager.create_account()
        await handshake.build_auth_response(wallet, 1, ctx, APP)
        await manager.wait_for_background()

        config = await fetch_wallet_config(wallet, hub, await create_hub_config(wallet, hub))
        assert len(config.accounts) == 2
        assert "https://app.example" in config.accounts[1].apps

    @pytest.mark.asyncio
    async def test_locked_wallet_refused(self, manager, secret, hub, transit_key):
        signed_in = await _sign_in(manager, secret)
        wallet = signed_in.wallet
        await signed_in.lock()
        handshake = AuthHandshake(signed_in)
        ctx = decode_auth_request(make_auth_request(public_keys=[transit_key[1]]))
        reads, writes = list(hub.reads), list(hub.writes)

        with pytest.raises(NotAuthenticated):
            await handshake.build_auth_response(wallet, 0, ctx, APP)
        assert hub.reads == reads
        assert hub.writes == writes
        assert isinstance(signed_in.state, Locked)

    @pytest.mark.asyncio
    async def test_other_sessions_wallet_refused(self, manager, secret, hub, transit_key):
        await _sign_in(manager, secret)
        other = SessionManager(SessionStore(), hub)
        await other.restore_wallet(secret)
        handshake = AuthHandshake(manager)
        ctx = decode_auth_request(make_auth_request(public_keys=[transit_key[1]]))

        with pytest.raises(NotAuthenticated):
            await handshake.build_auth_response(other.wallet, 0, ctx, APP)

    @pytest.mark.asyncio
    async def test_lock_while_registering_stops_signing(self, secret, transit_key):
        hub = _YieldingHub()
        manager = SessionManager(SessionStore(), hub)
        await manager.restore_wallet(secret)
        handshake = AuthHandshake(manager)
        ctx = decode_auth_request(make_auth_request(public_keys=[transit_key[1]]))

        task = asyncio.create_task(handshake.build_auth_response(manager.wallet, 0, ctx, APP))
        await asyncio.sleep(0)
        await manager.lock()
        with pytest.raises(NotAuthenticated):
            await task
        assert manager.session.current_account_index == 0


class TestRequestAnsweredOnce:
    @pytest.mark.asyncio
    async def test_second_answer_refused(self, manager, secret, hub, transit_key):
        signed_in = await _sign_in(manager, secret)
        handshake = AuthHandshake(signed_in)
        ctx = decode_auth_request(make_auth_request(public_keys=[transit_key[1]]))
        await handshake.build_auth_response(signed_in.wallet, 0, ctx, APP)
        writes = list(hub.writes)

        with pytest.raises(MalformedToken):
            await handshake.build_auth_response(signed_in.wallet, 0, ctx, APP)
        assert hub.writes == writes

    @pytest.mark.asyncio
    async def test_concurrent_answers(self, secret, transit_key):
        manager = SessionManager(SessionStore(), _YieldingHub())
        await manager.restore_wallet(secret)
        handshake = AuthHandshake(manager)
        ctx = decode_auth_request(make_auth_request(public_keys=[transit_key[1]]))

        results = await asyncio.gather(
            handshake.build_auth_response(manager.wallet, 0, ctx, APP),
            handshake.build_auth_response(manager.wallet, 0, ctx, APP),
            return_exceptions=True,
        )
        assert sum(isinstance(r, SignedAuthResponse) for r in results) == 1
        assert sum(isinstance(r, MalformedToken) for r in results) == 1

    @pytest.mark.asyncio
    async def test_failed_attempt_can_retry(self, secret, transit_key):
        hub = _FlakyHub()
        manager = SessionManager(SessionStore(), hub)
        await manager.restore_wallet(secret)
        handshake = AuthHandshake(manager)
        ctx = decode_auth_request(make_auth_request(public_keys=[transit_key[1]]))

        hub.down = True
        with pytest.raises(RemoteStorageFailure):
            await handshake.build_auth_response(manager.wallet, 0, ctx, APP)
        hub.down = False
        response = await handshake.build_auth_response(manager.wallet, 0, ctx, APP)
        assert response.request is ctx


class TestMetadataCache:
    @pytest.mark.asyncio
    async def test_answer_drops_cached_metadata(self, manager, secret, transit_key):
        signed_in = await _sign_in(manager, secret)
        handshake = AuthHandshake(signed_in)
        ctx = decode_auth_request(make_auth_request(
            public_keys=[transit_key[1]],
            appDetails={"name": "Named", "icon": "https://app.example/i.png"},
        ))
        app = await handshake.resolve_app_metadata(ctx)
        assert ctx.raw_token in handshake._metadata

        await handshake.build_auth_response(signed_in.wallet, 0, ctx, app)
        assert ctx.raw_token not in handshake._metadata

    @pytest.mark.asyncio
    async def test_unanswered_requests_bounded(self, manager):
        handshake = AuthHandshake(manager)
        contexts = [
            decode_auth_request(make_auth_request(
                appDetails={"name": "Named", "icon": "https://i"}, state=i,
            ))
            for i in range(METADATA_CACHE_SIZE + 5)
        ]
        for ctx in contexts:
            await handshake.resolve_app_metadata(ctx)
        assert len(handshake._metadata) == METADATA_CACHE_SIZE
        assert contexts[0].raw_token not in handshake._metadata
        assert contexts[-1].raw_token in handshake._metadata
