"""
Component wiring for idwallet.

``WalletRuntime`` builds every collaborator from one ``IdWalletConfig``:

  - logging from ``[logging]``
  - an ``HttpHubStorage`` for ``hub.hub_url`` with ``hub.timeout``
  - the ``SessionStore`` at ``session.state_file`` (memory only when empty)
  - the ``SessionManager`` and its ``AuthHandshake``

Usage:
    async with WalletRuntime.from_file("idwallet.toml") as runtime:
        await runtime.manager.unlock(password)
"""

from __future__ import annotations

import logging
from typing import Optional

import aiohttp

from idwallet_core.auth import AuthHandshake
from idwallet_core.config import IdWalletConfig, load_config
from idwallet_core.hub import HttpHubStorage
from idwallet_core.logging_config import setup_from_config
from idwallet_core.session import SessionManager

logger = logging.getLogger("idwallet_runtime")


class WalletRuntime:
    """Owns the shared HTTP session; everything else hangs off the manager."""

    def __init__(self, config: IdWalletConfig | None = None,
                 configure_logging: bool = True):
        self.config = config or IdWalletConfig()
        self.configure_logging = configure_logging
        self.http: Optional[aiohttp.ClientSession] = None
        self.hub: Optional[HttpHubStorage] = None
        self.manager: Optional[SessionManager] = None
        self.handshake: Optional[AuthHandshake] = None

    @classmethod
    def from_file(cls, path: str | None = None, **kwargs) -> WalletRuntime:
        """Load ``path`` plus ``IDWALLET_*`` overrides, see ``load_config``."""
        return cls(load_config(path), **kwargs)

    async def start(self) -> WalletRuntime:
        if self.configure_logging:
            setup_from_config(self.config.logging)
        self.http = aiohttp.ClientSession()
        self.hub = HttpHubStorage.from_settings(self.config.hub, self.http)
        self.manager = SessionManager(None, self.hub, self.config)
        self.handshake = AuthHandshake(self.manager, http=self.http)
        state_file = self.config.session.state_file or "memory"
        logger.info(f"Wallet runtime started (hub={self.hub.hub_url}, state={state_file})")
        return self

    async def close(self) -> None:
        """Finish pending hub writes, then close the HTTP session."""
        if self.manager is not None:
            await self.manager.wait_for_background()
        if self.http is not None:
            await self.http.close()
            self.http = None

    async def __aenter__(self) -> WalletRuntime:
        return await self.start()

    async def __aexit__(self, *exc) -> None:
        await self.close()
