"""
Sign-in handshake for idwallet.

A requesting application sends a compact auth-request token.  The wallet:

1. **Decodes** it into an immutable ``AuthRequestContext``.
2. **Resolves app metadata** (name, icon) from the token's ``appDetails`` or,
   failing that, with one fetch of the app manifest.
3. Once the user picks an account, **builds the auth response**:
   (a) connect to the hub, (b) fetch-or-create the wallet config without
   uploading, (c) register the app under the account and upload,
   (d) blank the username when deterministic signing is configured,
   (e) sign the response, (f) restore the username, (g) make the account
   current.  Steps (a)-(c) hold the session manager's ``hub_lock``.

Delivery of the response to the application is left to the caller
(``SignedAuthResponse.redirect_url``).
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterator, Optional
from urllib.parse import urlencode, urlsplit

import aiohttp

from idwallet_core.account import Account, get_app_private_key
from idwallet_core.config import IdWalletConfig
from idwallet_core.crypto_utils import encrypt_ecies
from idwallet_core.errors import MalformedToken, ManifestUnavailable, NotAuthenticated
from idwallet_core.hub import (
    AppEntry,
    HubConfig,
    create_hub_config,
    get_or_create_wallet_config,
    now_ms,
    update_wallet_config_with_app,
)
from idwallet_core.tokens import decode_token, encode_token

if TYPE_CHECKING:
    from idwallet_core.session import SessionManager
    from idwallet_core.wallet import Wallet

logger = logging.getLogger("idwallet_auth")

AUTH_RESPONSE_VERSION = "1.4.0"

# Resolved metadata kept for requests not yet answered
METADATA_CACHE_SIZE = 256
# Answered request tokens remembered to refuse replays
ANSWERED_HISTORY = 10_000


# ─── Data ────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class AuthRequestContext:
    """A decoded auth request. Consumed once by ``build_auth_response``."""
    redirect_uri: str
    manifest_uri: str
    scopes: tuple[str, ...]
    requested_public_key: str
    raw_token: str
    app_name: Optional[str] = None
    app_icon: Optional[str] = None

    @property
    def app_origin(self) -> str:
        return _origin(self.redirect_uri)


@dataclass(frozen=True)
class AppMetadata:
    name: str
    icon_url: str
    origin_url: str


@dataclass(frozen=True)
class SignedAuthResponse:
    token: str
    request: AuthRequestContext
    account_index: int

    def redirect_url(self) -> str:
        sep = "&" if "?" in self.request.redirect_uri else "?"
        return f"{self.request.redirect_uri}{sep}{urlencode({'authResponse': self.token})}"


def _origin(url: str) -> str:
    parts = urlsplit(url)
    if not parts.scheme or not parts.netloc:
        raise ValueError(f"Not an absolute URL: {url!r}")
    return f"{parts.scheme}://{parts.netloc}"


# ─── Decoding ────────────────────────────────────────────────────────


def decode_auth_request(raw_token: str) -> AuthRequestContext:
    """Parse an auth request token. Raises ``MalformedToken``."""
    try:
        payload = decode_token(raw_token).payload
    except ValueError as exc:
        raise MalformedToken(str(exc)) from exc

    redirect_uri = payload.get("redirect_uri")
    if not isinstance(redirect_uri, str) or not redirect_uri:
        raise MalformedToken("Auth request is missing redirect_uri")
    try:
        origin = _origin(redirect_uri)
    except ValueError as exc:
        raise MalformedToken(str(exc)) from exc

    public_keys = payload.get("public_keys")
    if (not isinstance(public_keys, list) or not public_keys
            or not isinstance(public_keys[0], str)):
        raise MalformedToken("Auth request is missing public_keys")

    manifest_uri = payload.get("manifest_uri") or f"{origin}/manifest.json"
    raw_scopes = payload.get("scopes") or []
    if not isinstance(raw_scopes, list):
        raise MalformedToken("Auth request scopes must be a list")
    scopes = tuple(dict.fromkeys(str(s) for s in raw_scopes))

    details = payload.get("appDetails")
    if not isinstance(details, dict):
        details = {}

    return AuthRequestContext(
        redirect_uri=redirect_uri,
        manifest_uri=str(manifest_uri),
        scopes=scopes,
        requested_public_key=public_keys[0],
        raw_token=raw_token,
        app_name=details.get("name") or None,
        app_icon=details.get("icon") or None,
    )


@contextmanager
def _username_blanked(account: Account, enabled: bool) -> Iterator[None]:
    """Blank ``account.username`` for the duration of the block when enabled."""
    username = account.username
    if enabled:
        account.username = ""
    try:
        yield
    finally:
        account.username = username


# ─── Handshake ───────────────────────────────────────────────────────


class AuthHandshake:
    """
    Resolves requesting applications and signs auth responses.

    Works against the ``SessionManager`` that owns the session: responses
    are only signed for its signed-in wallet, and hub writes share its
    ``hub_lock``.  ``http`` is an optional shared ``aiohttp.ClientSession``;
    without one a short-lived session is opened per manifest fetch.

    Each request token is answered at most once.
    """

    def __init__(self, manager: SessionManager,
                 config: IdWalletConfig | None = None,
                 http: aiohttp.ClientSession | None = None):
        self.manager = manager
        self.hub = manager.hub
        self.config = config or manager.config
        self._http = http
        self._metadata: dict[str, AppMetadata] = {}
        self._answered_ids: deque[str] = deque(maxlen=ANSWERED_HISTORY)
        self._answered_set: set[str] = set()
        self._in_flight: set[str] = set()

    decode_auth_request = staticmethod(decode_auth_request)

    # ---- app metadata ----

    async def resolve_app_metadata(self, ctx: AuthRequestContext) -> AppMetadata:
        """
        Name and icon of the requesting app.

        Uses ``appDetails`` from the token when both are present, otherwise
        fetches ``ctx.manifest_uri`` once.  Cached per request token until
        the request is answered; a cancelled or failed fetch caches nothing.
        """
        cached = self._metadata.get(ctx.raw_token)
        if cached is not None:
            return cached

        if ctx.app_name and ctx.app_icon:
            metadata = AppMetadata(ctx.app_name, ctx.app_icon, ctx.app_origin)
        else:
            manifest = await self._fetch_manifest(ctx.manifest_uri)
            try:
                name = manifest["name"]
                icon = manifest["icons"][0]["src"]
            except (KeyError, IndexError, TypeError) as exc:
                raise ManifestUnavailable(f"Manifest at {ctx.manifest_uri} is incomplete") from exc
            if not isinstance(name, str) or not isinstance(icon, str):
                raise ManifestUnavailable(f"Manifest at {ctx.manifest_uri} is malformed")
            metadata = AppMetadata(name, icon, ctx.app_origin)

        if len(self._metadata) >= METADATA_CACHE_SIZE:
            # drop the oldest unanswered request
            self._metadata.pop(next(iter(self._metadata)))
        self._metadata[ctx.raw_token] = metadata
        return metadata

    async def _fetch_manifest(self, url: str) -> dict:
        timeout = aiohttp.ClientTimeout(total=self.config.auth.manifest_timeout)
        try:
            if self._http is not None:
                return await self._get_json(self._http, url, timeout)
            async with aiohttp.ClientSession() as http:
                return await self._get_json(http, url, timeout)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            logger.warning(f"Manifest fetch from {url} failed: {exc}")
            raise ManifestUnavailable(f"Could not load manifest {url}: {exc}") from exc

    @staticmethod
    async def _get_json(http: aiohttp.ClientSession, url: str,
                        timeout: aiohttp.ClientTimeout) -> dict:
        async with http.get(url, timeout=timeout) as resp:
            resp.raise_for_status()
            data = await resp.json(content_type=None)
        if not isinstance(data, dict):
            raise ValueError("manifest is not a JSON object")
        return data

    # ---- response ----

    async def build_auth_response(self, wallet: Wallet, account_index: int,
                                  ctx: AuthRequestContext,
                                  app: AppMetadata) -> SignedAuthResponse:
        """
        Register the app for the account and sign the auth response.

        Raises ``NotAuthenticated`` unless *wallet* is the manager's signed-in
        wallet, and ``MalformedToken`` when *ctx* was already answered.  A
        failed attempt leaves *ctx* usable for a retry.
        """
        self._check_signed_in(wallet)
        account = wallet.get_account(account_index)
        raw = ctx.raw_token
        if raw in self._answered_set or raw in self._in_flight:
            raise MalformedToken("Auth request has already been answered")

        self._in_flight.add(raw)
        try:
            response = await self._answer(wallet, account, ctx, app)
        finally:
            self._in_flight.discard(raw)
        self._mark_answered(raw)
        self._metadata.pop(raw, None)
        return response

    async def _answer(self, wallet: Wallet, account: Account,
                      ctx: AuthRequestContext,
                      app: AppMetadata) -> SignedAuthResponse:
        app_domain = ctx.app_origin

        async with self.manager.hub_lock:
            hub_config = await create_hub_config(wallet, self.hub)
            wallet_config = await get_or_create_wallet_config(
                wallet, self.hub, hub_config, skip_upload=True
            )
            await update_wallet_config_with_app(
                wallet, self.hub, hub_config, wallet_config, account,
                AppEntry(
                    origin=app_domain,
                    scopes=list(ctx.scopes),
                    last_login_at=now_ms(),
                    app_icon=app.icon_url,
                    name=app.name,
                ),
            )

        # the session may have been locked while the hub was busy
        self._check_signed_in(wallet)
        with _username_blanked(account, self.config.auth.deterministic_signing):
            token = self._sign_response(account, ctx, app_domain, hub_config)

        await self.manager.select_account(account.index, wallet)
        logger.info(f"Signed auth response for {app_domain} with account {account.index}")
        return SignedAuthResponse(token=token, request=ctx, account_index=account.index)

    def _check_signed_in(self, wallet: Wallet) -> None:
        if self.manager.wallet is not wallet or not wallet.is_unlocked:
            raise NotAuthenticated("Auth responses need the signed-in wallet")

    def _mark_answered(self, raw_token: str) -> None:
        if len(self._answered_ids) >= self._answered_ids.maxlen:
            self._answered_set.discard(self._answered_ids[0])
        self._answered_ids.append(raw_token)
        self._answered_set.add(raw_token)

    def _sign_response(self, account: Account, ctx: AuthRequestContext,
                       app_domain: str, hub_config: HubConfig) -> str:
        app_private_key = get_app_private_key(account, app_domain)
        try:
            envelope = encrypt_ecies(ctx.requested_public_key,
                                     app_private_key.hex().encode("ascii"))
        except ValueError as exc:
            raise MalformedToken(f"Unusable transit public key: {exc}") from exc

        issued_at = int(time.time())
        identity_address = account.identity_address
        payload = {
            "jti": str(uuid.uuid4()),
            "iat": issued_at,
            "exp": issued_at + self.config.auth.response_ttl_seconds,
            "iss": f"did:btc-addr:{identity_address}",
            "public_keys": [account.data_public_key.hex()],
            "appDomain": app_domain,
            "scopes": list(ctx.scopes),
            "transitPublicKey": ctx.requested_public_key,
            "private_key": json.dumps(envelope).encode("utf-8").hex(),
            "username": account.username or None,
            "profile_url": f"{hub_config.url_prefix}{identity_address}/profile.json",
            "hubUrl": self.hub.hub_url,
            "version": AUTH_RESPONSE_VERSION,
        }
        return encode_token(payload, account.data_private_key)
