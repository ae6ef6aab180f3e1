"""
Wallet session manager for idwallet.

``SessionManager`` is the single owner of the wallet session.  Every
mutating operation is a coroutine serialised by one ``asyncio.Lock``:

    SignedOut --create_wallet / restore_wallet--> SignedIn
    SignedIn  --create_account / set_password---> SignedIn
    SignedIn  --lock----------------------------> Locked
    Locked    --unlock--------------------------> SignedIn
    any       --sign_out------------------------> SignedOut

The master secret lives in a ``bytearray`` that is zeroed on ``lock()`` and
``sign_out()``.  Session data lives in a ``SessionStore`` passed in by the
caller, or built from ``session.state_file`` when none is given; when the
store has a ``path`` the non-secret parts (encrypted blob, password flag,
account metadata) are written there as JSON so that a new process starts
out Locked.

Reads and writes of the hub wallet config happen under ``hub_lock``, shared
with ``AuthHandshake``.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Union

from idwallet_core.account import (
    Account,
    AddressVersion,
    get_display_name,
    get_stx_address,
    phrase_to_secret,
)
from idwallet_core.config import IdWalletConfig, SessionConfig
from idwallet_core.crypto_utils import (
    decrypt_secret,
    encrypt_secret,
    generate_secret_key,
    wipe,
)
from idwallet_core.errors import NoStoredKey, NotAuthenticated, RemoteStorageFailure
from idwallet_core.hub import (
    HubStorage,
    create_hub_config,
    restore_wallet_accounts,
    update_wallet_config,
)
from idwallet_core.wallet import Wallet

logger = logging.getLogger("idwallet_session")


# ─── Session states ──────────────────────────────────────────────────


@dataclass(frozen=True)
class SignedOut:
    pass


@dataclass(frozen=True)
class SignedIn:
    current_account_index: int
    has_password: bool


@dataclass(frozen=True)
class Locked:
    has_password: bool
    account_count: int


SessionState = Union[SignedOut, SignedIn, Locked]


@dataclass
class Session:
    """Everything the session knows. Only ``wallet`` holds key material."""
    wallet: Optional[Wallet] = None
    encrypted_secret_key: Optional[str] = None
    current_account_index: Optional[int] = None
    has_password: bool = False
    account_count: int = 0
    usernames: dict[int, str] = field(default_factory=dict)

    @property
    def state(self) -> SessionState:
        if self.wallet is not None and self.wallet.is_unlocked:
            return SignedIn(
                current_account_index=self.current_account_index or 0,
                has_password=self.has_password,
            )
        if self.encrypted_secret_key:
            return Locked(has_password=self.has_password, account_count=self.account_count)
        return SignedOut()

    def remember_accounts(self, wallet: Wallet) -> None:
        self.account_count = len(wallet.accounts)
        self.usernames = {a.index: a.username for a in wallet.accounts if a.username}


class SessionStore:
    """Holds the ``Session``; optionally mirrors its non-secret fields to disk."""

    def __init__(self, path: str | Path | None = None):
        self.path = Path(path) if path else None
        self.session = Session()

    @classmethod
    def load(cls, path: str | Path) -> SessionStore:
        """
        Open *path*; a previously saved session comes back Locked.

        Raises ValueError when the file exists but is not a saved session.
        """
        store = cls(path)
        if store.path.exists():
            try:
                data = json.loads(store.path.read_text(encoding="utf-8"))
                if not isinstance(data, dict):
                    raise ValueError("top level is not an object")
                store.session = Session(
                    encrypted_secret_key=data.get("encrypted_secret_key"),
                    current_account_index=data.get("current_account_index"),
                    has_password=bool(data.get("has_password", False)),
                    account_count=int(data.get("account_count", 0)),
                    usernames={int(k): v for k, v in (data.get("usernames") or {}).items()},
                )
            except (ValueError, TypeError, AttributeError) as exc:
                raise ValueError(f"Session state file {store.path} is unreadable: {exc}") from exc
        return store

    @classmethod
    def from_config(cls, cfg: SessionConfig) -> SessionStore:
        """File-backed store when ``state_file`` is set, else memory only."""
        if cfg.state_file:
            return cls.load(cfg.state_file)
        return cls()

    def save(self) -> None:
        if self.path is None:
            return
        s = self.session
        data = {
            "encrypted_secret_key": s.encrypted_secret_key,
            "current_account_index": s.current_account_index,
            "has_password": s.has_password,
            "account_count": s.account_count,
            "usernames": {str(k): v for k, v in s.usernames.items()},
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        # atomic replace
        tmp = self.path.with_name(self.path.name + ".tmp")
        tmp.write_text(json.dumps(data), encoding="utf-8")
        tmp.replace(self.path)

    def clear(self) -> None:
        self.session = Session()
        if self.path is not None and self.path.exists():
            self.path.unlink()


# ─── Manager ─────────────────────────────────────────────────────────


class SessionManager:
    """Owns the session lifecycle; see module docstring for transitions."""

    def __init__(self, store: SessionStore | None, hub: HubStorage,
                 config: IdWalletConfig | None = None):
        self.config = config or IdWalletConfig()
        if store is None:
            store = SessionStore.from_config(self.config.session)
        self.store = store
        self.hub = hub
        self._lock = asyncio.Lock()
        # Held around every read-modify-write of the hub wallet config.
        self.hub_lock = asyncio.Lock()
        self.background_tasks: set[asyncio.Task] = set()

    # ---- read side ----

    @property
    def session(self) -> Session:
        return self.store.session

    @property
    def state(self) -> SessionState:
        return self.session.state

    @property
    def wallet(self) -> Optional[Wallet]:
        return self.session.wallet

    @property
    def is_signed_in(self) -> bool:
        return isinstance(self.state, SignedIn)

    def require_wallet(self) -> Wallet:
        wallet = self.session.wallet
        if wallet is None or not wallet.is_unlocked:
            raise NotAuthenticated("Wallet is not signed in")
        return wallet

    @property
    def current_account_index(self) -> Optional[int]:
        return self.session.current_account_index if self.is_signed_in else None

    @property
    def current_account(self) -> Optional[Account]:
        if not self.is_signed_in:
            return None
        index = self.session.current_account_index or 0
        accounts = self.session.wallet.accounts
        return accounts[index] if index < len(accounts) else None

    def current_address(self, network: str | None = None) -> Optional[str]:
        account = self.current_account
        if account is None:
            return None
        version = AddressVersion.for_network(network or self.config.wallet.network)
        return get_stx_address(account, version)

    def current_display_name(self) -> Optional[str]:
        account = self.current_account
        return get_display_name(account) if account else None

    # ---- lifecycle ----

    async def create_wallet(self) -> Wallet:
        """Generate a fresh secret and sign in with account 0."""
        async with self._lock:
            secret = generate_secret_key(256)
            try:
                wallet = await asyncio.to_thread(
                    Wallet.generate, secret, self.config.wallet.default_password
                )
            finally:
                wipe(secret)
            self._sign_in(wallet, index=0, has_password=False)
            logger.info("Created new wallet")
            return wallet

    async def restore_wallet(self, secret: bytes | bytearray | str,
                             password: str | None = None) -> Wallet:
        """Sign in from an existing secret (raw bytes or BIP-39 phrase)."""
        async with self._lock:
            if isinstance(secret, str):
                secret_buf = phrase_to_secret(secret)
            else:
                secret_buf = bytearray(secret)
            try:
                wallet = await self._restore(secret_buf, password)
            finally:
                wipe(secret_buf)
            self._sign_in(wallet, index=0, has_password=password is not None)
            logger.info(f"Restored wallet with {len(wallet.accounts)} account(s)")
            return wallet

    async def create_account(self) -> Account:
        """
        Append the next account and make it current.

        The hub copy of the wallet config is updated in a background task;
        its failure is logged and never affects the returned account.
        """
        async with self._lock:
            wallet = self.require_wallet()
            account = wallet.add_account()
            self.session.current_account_index = account.index
            self.session.remember_accounts(wallet)
            self.store.save()
            task = asyncio.create_task(self._persist_wallet_config(wallet))
            self.background_tasks.add(task)
            task.add_done_callback(self.background_tasks.discard)
            logger.info(f"Created account {account.index}")
            return account

    async def set_password(self, password: str) -> str:
        """Re-encrypt the secret under *password*; returns the hex blob."""
        async with self._lock:
            wallet = self.require_wallet()
            blob = await asyncio.to_thread(encrypt_secret, wallet.secret_key, password)
            wallet.encrypted_secret_key = blob
            self.session.encrypted_secret_key = blob
            self.session.has_password = True
            self.store.save()
            logger.info("Wallet password set")
            return blob

    async def select_account(self, index: int,
                             wallet: Wallet | None = None) -> Account:
        """
        Make account *index* current.  When *wallet* is given it must still
        be the signed-in wallet, otherwise ``NotAuthenticated`` is raised.
        """
        async with self._lock:
            current = self.require_wallet()
            if wallet is not None and wallet is not current:
                raise NotAuthenticated("Wallet is no longer the signed-in wallet")
            account = current.get_account(index)
            self.session.current_account_index = index
            self.store.save()
            return account

    async def unlock(self, password: str) -> Wallet:
        """
        Decrypt the stored secret and sign back in.

        Already signed in: returns the live wallet unchanged without
        checking *password*.
        """
        async with self._lock:
            if self.is_signed_in:
                logger.debug("unlock ignored, wallet already signed in")
                return self.session.wallet
            blob = self.session.encrypted_secret_key
            if not blob:
                raise NoStoredKey("Tried to unlock wallet when no encrypted key found")
            secret = await asyncio.to_thread(decrypt_secret, blob, password)
            try:
                wallet = await self._restore(secret, password,
                                             min_accounts=self.session.account_count,
                                             usernames=self.session.usernames)
            finally:
                wipe(secret)
            index = self.session.current_account_index or 0
            if index >= len(wallet.accounts):
                index = 0
            self._sign_in(wallet, index=index, has_password=True)
            logger.info("Wallet unlocked")
            return wallet

    async def lock(self) -> SessionState:
        """Wipe the secret; keep the encrypted blob and account metadata."""
        async with self._lock:
            wallet = self.session.wallet
            if wallet is None or not wallet.is_unlocked:
                raise NotAuthenticated("Cannot lock - wallet is not signed in")
            self.session.remember_accounts(wallet)
            wallet.forget_secret()
            self.session.wallet = None
            self.store.save()
            logger.info("Wallet locked")
            return self.state

    async def sign_out(self) -> SessionState:
        """Wipe the secret and forget everything."""
        async with self._lock:
            if self.session.wallet is not None:
                self.session.wallet.forget_secret()
            self.store.clear()
            logger.info("Signed out")
            return self.state

    async def wait_for_background(self) -> None:
        """Wait until every pending background persistence task finished."""
        while self.background_tasks:
            await asyncio.gather(*list(self.background_tasks), return_exceptions=True)

    # ---- internals ----

    async def _restore(self, secret: bytearray, password: str | None,
                       min_accounts: int = 0,
                       usernames: dict[int, str] | None = None) -> Wallet:
        wallet = await asyncio.to_thread(
            Wallet.generate, secret, password or self.config.wallet.default_password
        )
        if min_accounts:
            wallet.restore_accounts(min_accounts, usernames)
        try:
            await restore_wallet_accounts(wallet, self.hub)
        except RemoteStorageFailure as exc:
            logger.warning(f"Could not restore accounts from hub: {exc}")
        return wallet

    def _sign_in(self, wallet: Wallet, index: int, has_password: bool) -> None:
        previous = self.session.wallet
        if previous is not None and previous is not wallet:
            previous.forget_secret()
        s = self.session
        s.wallet = wallet
        s.encrypted_secret_key = wallet.encrypted_secret_key
        s.current_account_index = index
        s.has_password = has_password
        s.remember_accounts(wallet)
        self.store.save()

    async def _persist_wallet_config(self, wallet: Wallet) -> bool:
        try:
            async with self.hub_lock:
                hub_config = await create_hub_config(wallet, self.hub)
                await update_wallet_config(wallet, self.hub, hub_config)
        except RemoteStorageFailure as exc:
            logger.warning(f"Wallet config update failed, local accounts kept: {exc}")
            return False
        except Exception:
            logger.exception("Unexpected error while persisting wallet config")
            return False
        return True
