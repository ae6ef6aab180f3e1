"""
TOML-based configuration for idwallet.

Loads settings from a TOML file and/or environment variables.
Environment variables take precedence over file values.

Usage:
    from idwallet_core.config import load_config
    cfg = load_config("idwallet.toml")
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

if sys.version_info >= (3, 11):
    import tomllib
else:
    try:
        import tomllib  # type: ignore[import]
    except ModuleNotFoundError:
        import tomli as tomllib  # type: ignore[import,no-redef]


DEFAULT_HUB_URL = "https://hub.blockstack.org"
DEFAULT_PASSWORD = "password"


@dataclass
class HubSettings:
    """Remote identity-hub settings."""
    hub_url: str = DEFAULT_HUB_URL
    timeout: float = 15.0


@dataclass
class WalletSettings:
    """Wallet defaults.

    ``default_password`` encrypts a freshly created wallet's secret until
    the user sets a real password.
    """
    network: str = "testnet"          # "testnet" or "mainnet"
    default_password: str = DEFAULT_PASSWORD


@dataclass
class AuthConfig:
    """Sign-in handshake settings."""
    # Blank the account username while signing so responses are
    # reproducible in fixtures.
    deterministic_signing: bool = False
    response_ttl_seconds: int = 30 * 24 * 3600
    manifest_timeout: float = 10.0


@dataclass
class SessionConfig:
    """Local session persistence. Empty ``state_file`` = memory only."""
    state_file: str = ""


@dataclass
class LoggingConfig:
    """Logging settings."""
    level: str = "INFO"
    format: str = "human"   # "human" or "json"
    file: str | None = None


@dataclass
class IdWalletConfig:
    """Top-level configuration container."""
    hub: HubSettings = field(default_factory=HubSettings)
    wallet: WalletSettings = field(default_factory=WalletSettings)
    auth: AuthConfig = field(default_factory=AuthConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


_TRUTHY = {"1", "true", "yes", "on"}


def _merge(dc: Any, raw: dict[str, Any]) -> None:
    """Merge a raw dict into a dataclass instance (in-place)."""
    for key, value in raw.items():
        key_under = key.replace("-", "_")
        if hasattr(dc, key_under):
            setattr(dc, key_under, value)


def load_config(path: str | None = None) -> IdWalletConfig:
    """
    Load configuration from a TOML file, then overlay environment variables.

    Env-var mapping:
        IDWALLET_HUB_URL             -> hub.hub_url
        IDWALLET_NETWORK             -> wallet.network
        IDWALLET_STATE_FILE          -> session.state_file
        IDWALLET_DETERMINISTIC_AUTH  -> auth.deterministic_signing
        IDWALLET_LOG_LEVEL           -> logging.level
        IDWALLET_LOG_FMT             -> logging.format
    """
    cfg = IdWalletConfig()

    # ── TOML file ────────────────────────────────────────────────
    if path is not None:
        p = Path(path)
        if p.exists():
            with open(p, "rb") as f:
                data = tomllib.load(f)
            for section_name, section_dc in [
                ("hub", cfg.hub),
                ("wallet", cfg.wallet),
                ("auth", cfg.auth),
                ("session", cfg.session),
                ("logging", cfg.logging),
            ]:
                if section_name in data:
                    _merge(section_dc, data[section_name])

    # ── Environment variable overrides ───────────────────────────
    if v := os.environ.get("IDWALLET_HUB_URL"):
        cfg.hub.hub_url = v
    if v := os.environ.get("IDWALLET_NETWORK"):
        cfg.wallet.network = v.lower()
    if v := os.environ.get("IDWALLET_STATE_FILE"):
        cfg.session.state_file = v
    if v := os.environ.get("IDWALLET_DETERMINISTIC_AUTH"):
        cfg.auth.deterministic_signing = v.strip().lower() in _TRUTHY
    if v := os.environ.get("IDWALLET_LOG_LEVEL"):
        cfg.logging.level = v.upper()
    if v := os.environ.get("IDWALLET_LOG_FMT"):
        cfg.logging.format = v

    return cfg
