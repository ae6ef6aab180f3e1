"""
Remote identity-hub collaborator for idwallet.

The hub is treated as an opaque per-address key/value store.  This module
provides:

  - ``HubStorage``          abstract get/put interface
  - ``InMemoryHubStorage``  process-local store (tests, offline use)
  - ``HttpHubStorage``      thin ``aiohttp`` client for a real hub
  - ``WalletConfig``        the wallet's account/app registry, stored
                            encrypted under the wallet-config key
  - helpers mirroring the wallet lifecycle: create a hub config,
    fetch-or-create, update, register an app, restore accounts

Every storage failure surfaces as ``RemoteStorageFailure``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Optional

import aiohttp

from idwallet_core.config import HubSettings
from idwallet_core.crypto_utils import (
    btc_address,
    decrypt_with_key,
    encrypt_with_key,
    public_key_from_private,
    sha256,
)
from idwallet_core.errors import RemoteStorageFailure
from idwallet_core.tokens import encode_token

if TYPE_CHECKING:
    from idwallet_core.account import Account
    from idwallet_core.wallet import Wallet

logger = logging.getLogger("idwallet_hub")

WALLET_CONFIG_FILE = "wallet-config.json"


# ─── Hub connection ──────────────────────────────────────────────────


@dataclass(frozen=True)
class HubConfig:
    """Connection details for one address on one hub."""
    server: str
    address: str
    url_prefix: str
    token: str


def _make_hub_token(private_key: bytes, hub_url: str, challenge: str) -> str:
    payload = {
        "gaiaChallenge": challenge,
        "hubUrl": hub_url,
        "iss": public_key_from_private(private_key).hex(),
        "salt": os.urandom(16).hex(),
    }
    return "v1:" + encode_token(payload, private_key)


class HubStorage(ABC):
    """Opaque key/value storage addressed by ``(hub config, path)``."""

    def __init__(self, hub_url: str):
        self.hub_url = hub_url.rstrip("/")

    @abstractmethod
    async def connect(self, private_key: bytes) -> HubConfig:
        """Authorise *private_key*'s address on this hub."""

    @abstractmethod
    async def get(self, config: HubConfig, path: str) -> Optional[bytes]:
        """Return stored bytes, or None when nothing is stored at *path*."""

    @abstractmethod
    async def put(self, config: HubConfig, path: str, data: bytes,
                  content_type: str = "application/octet-stream") -> None:
        """Store *data* at *path*."""


class InMemoryHubStorage(HubStorage):
    """Dict-backed hub. ``reads`` and ``writes`` record every access."""

    def __init__(self, hub_url: str = "https://hub.local"):
        super().__init__(hub_url)
        self.files: dict[tuple[str, str], bytes] = {}
        self.reads: list[tuple[str, str]] = []
        self.writes: list[tuple[str, str]] = []

    async def connect(self, private_key: bytes) -> HubConfig:
        address = btc_address(public_key_from_private(private_key))
        return HubConfig(
            server=self.hub_url,
            address=address,
            url_prefix=f"{self.hub_url}/read/",
            token=_make_hub_token(private_key, self.hub_url, "in-memory"),
        )

    async def get(self, config: HubConfig, path: str) -> Optional[bytes]:
        self.reads.append((config.address, path))
        return self.files.get((config.address, path))

    async def put(self, config: HubConfig, path: str, data: bytes,
                  content_type: str = "application/octet-stream") -> None:
        self.writes.append((config.address, path))
        self.files[(config.address, path)] = bytes(data)


class HttpHubStorage(HubStorage):
    """
    Hub client over HTTP.

    ``GET  <hub>/hub_info``                     read prefix + challenge
    ``GET  <read_url_prefix><address>/<path>``  read
    ``POST <hub>/store/<address>/<path>``       write (bearer token)
    """

    def __init__(self, hub_url: str, session: aiohttp.ClientSession,
                 timeout: float = 15.0):
        super().__init__(hub_url)
        self._session = session
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    @classmethod
    def from_settings(cls, settings: HubSettings,
                      session: aiohttp.ClientSession) -> HttpHubStorage:
        """Client for the configured ``hub.hub_url`` and ``hub.timeout``."""
        return cls(settings.hub_url, session, timeout=settings.timeout)

    async def connect(self, private_key: bytes) -> HubConfig:
        try:
            async with self._session.get(f"{self.hub_url}/hub_info",
                                         timeout=self._timeout) as resp:
                resp.raise_for_status()
                info = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            raise RemoteStorageFailure(f"hub_info request failed: {exc}") from exc
        if not isinstance(info, dict) or "read_url_prefix" not in info:
            raise RemoteStorageFailure("hub_info response missing read_url_prefix")
        address = btc_address(public_key_from_private(private_key))
        return HubConfig(
            server=self.hub_url,
            address=address,
            url_prefix=info["read_url_prefix"],
            token=_make_hub_token(private_key, self.hub_url, info.get("challenge_text", "")),
        )

    async def get(self, config: HubConfig, path: str) -> Optional[bytes]:
        url = f"{config.url_prefix}{config.address}/{path}"
        try:
            async with self._session.get(url, timeout=self._timeout) as resp:
                if resp.status == 404:
                    return None
                resp.raise_for_status()
                return await resp.read()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise RemoteStorageFailure(f"Hub read of {path} failed: {exc}") from exc

    async def put(self, config: HubConfig, path: str, data: bytes,
                  content_type: str = "application/octet-stream") -> None:
        url = f"{config.server}/store/{config.address}/{path}"
        headers = {
            "Content-Type": content_type,
            "Authorization": f"bearer {config.token}",
        }
        try:
            async with self._session.post(url, data=data, headers=headers,
                                          timeout=self._timeout) as resp:
                resp.raise_for_status()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise RemoteStorageFailure(f"Hub write of {path} failed: {exc}") from exc


# ─── Wallet config ───────────────────────────────────────────────────


@dataclass
class AppEntry:
    """One application the user has signed in to."""
    origin: str
    scopes: list[str]
    last_login_at: int
    app_icon: str
    name: str

    def to_dict(self) -> dict:
        return {
            "origin": self.origin,
            "scopes": list(self.scopes),
            "lastLoginAt": self.last_login_at,
            "appIcon": self.app_icon,
            "name": self.name,
        }

    @classmethod
    def from_dict(cls, d: dict) -> AppEntry:
        return cls(
            origin=d["origin"],
            scopes=list(d.get("scopes", [])),
            last_login_at=int(d.get("lastLoginAt", 0)),
            app_icon=d.get("appIcon", ""),
            name=d.get("name", ""),
        )


@dataclass
class ConfigAccount:
    username: Optional[str] = None
    apps: dict[str, AppEntry] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "username": self.username,
            "apps": {origin: app.to_dict() for origin, app in self.apps.items()},
        }

    @classmethod
    def from_dict(cls, d: dict) -> ConfigAccount:
        return cls(
            username=d.get("username"),
            apps={o: AppEntry.from_dict(a) for o, a in (d.get("apps") or {}).items()},
        )


@dataclass
class WalletConfig:
    accounts: list[ConfigAccount] = field(default_factory=list)
    meta: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"accounts": [a.to_dict() for a in self.accounts], "meta": self.meta}

    @classmethod
    def from_dict(cls, d: dict) -> WalletConfig:
        return cls(
            accounts=[ConfigAccount.from_dict(a) for a in d.get("accounts", [])],
            meta=dict(d.get("meta") or {}),
        )


def make_wallet_config(wallet: Wallet) -> WalletConfig:
    return WalletConfig(accounts=[ConfigAccount(username=a.username) for a in wallet.accounts])


def _config_key(wallet: Wallet) -> bytes:
    return sha256(wallet.config_private_key)


async def create_hub_config(wallet: Wallet, storage: HubStorage) -> HubConfig:
    """Connect the wallet's config key to *storage*."""
    return await storage.connect(wallet.config_private_key)


async def fetch_wallet_config(wallet: Wallet, storage: HubStorage,
                              hub_config: HubConfig) -> Optional[WalletConfig]:
    """Read and decrypt the stored wallet config; None when absent."""
    blob = await storage.get(hub_config, WALLET_CONFIG_FILE)
    if blob is None:
        return None
    try:
        raw = decrypt_with_key(_config_key(wallet), blob)
        return WalletConfig.from_dict(json.loads(raw))
    except (ValueError, KeyError, TypeError) as exc:
        raise RemoteStorageFailure(f"Stored wallet config is unreadable: {exc}") from exc


async def upload_wallet_config(wallet: Wallet, storage: HubStorage,
                               hub_config: HubConfig, config: WalletConfig) -> None:
    data = json.dumps(config.to_dict(), separators=(",", ":")).encode("utf-8")
    await storage.put(hub_config, WALLET_CONFIG_FILE,
                      encrypt_with_key(_config_key(wallet), data))


async def get_or_create_wallet_config(wallet: Wallet, storage: HubStorage,
                                      hub_config: HubConfig,
                                      skip_upload: bool = False) -> WalletConfig:
    config = await fetch_wallet_config(wallet, storage, hub_config)
    if config is not None:
        return config
    config = make_wallet_config(wallet)
    if not skip_upload:
        await upload_wallet_config(wallet, storage, hub_config, config)
    return config


async def update_wallet_config(wallet: Wallet, storage: HubStorage,
                               hub_config: HubConfig,
                               config: Optional[WalletConfig] = None) -> WalletConfig:
    """
    Upload *config*, or when omitted, merge the wallet's current accounts
    into the stored config (keeping registered apps) and upload that.
    """
    if config is None:
        current = await fetch_wallet_config(wallet, storage, hub_config) or WalletConfig()
        accounts = []
        for account in wallet.accounts:
            if account.index < len(current.accounts):
                existing = current.accounts[account.index]
                existing.username = account.username or existing.username
                accounts.append(existing)
            else:
                accounts.append(ConfigAccount(username=account.username))
        config = WalletConfig(accounts=accounts, meta=current.meta)
    await upload_wallet_config(wallet, storage, hub_config, config)
    return config


async def update_wallet_config_with_app(wallet: Wallet, storage: HubStorage,
                                        hub_config: HubConfig,
                                        config: WalletConfig,
                                        account: Account,
                                        app: AppEntry) -> WalletConfig:
    """Register *app* under *account* and upload the config."""
    while len(config.accounts) <= account.index:
        index = len(config.accounts)
        username = wallet.accounts[index].username if index < len(wallet.accounts) else None
        config.accounts.append(ConfigAccount(username=username))
    config.accounts[account.index].apps[app.origin] = app
    await upload_wallet_config(wallet, storage, hub_config, config)
    logger.info(f"Registered app {app.origin} for account {account.index}")
    return config


async def restore_wallet_accounts(wallet: Wallet, storage: HubStorage,
                                  hub_config: Optional[HubConfig] = None) -> Wallet:
    """Grow *wallet* to the accounts recorded in its hub config."""
    if hub_config is None:
        hub_config = await create_hub_config(wallet, storage)
    config = await fetch_wallet_config(wallet, storage, hub_config)
    if config is None:
        return wallet
    usernames = {i: a.username for i, a in enumerate(config.accounts) if a.username}
    wallet.restore_accounts(len(config.accounts), usernames)
    logger.info(f"Restored {len(wallet.accounts)} account(s) from hub")
    return wallet


def now_ms() -> int:
    return int(time.time() * 1000)
