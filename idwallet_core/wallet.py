"""
Wallet store for idwallet.

A ``Wallet`` holds the master secret (while unlocked), its password-encrypted
blob, the wallet-config key and the ordered account list.  Account indices
are append-only: accounts are never removed or reordered.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from idwallet_core.account import (
    Account,
    derive_account,
    derive_accounts,
    derive_config_private_key,
)
from idwallet_core.crypto_utils import encrypt_secret, wipe
from idwallet_core.errors import AccountNotFound, NotAuthenticated

logger = logging.getLogger("idwallet_wallet")


@dataclass
class Wallet:
    encrypted_secret_key: str
    config_private_key: bytes
    accounts: list[Account] = field(default_factory=list)
    secret_key: bytearray | None = field(default=None, repr=False)

    # ---- factory ----

    @classmethod
    def generate(cls, secret: bytes | bytearray, password: str) -> Wallet:
        """Build a wallet with account 0 from *secret*, encrypted under *password*."""
        secret = bytearray(secret)
        return cls(
            encrypted_secret_key=encrypt_secret(secret, password),
            config_private_key=derive_config_private_key(secret),
            accounts=[derive_account(secret, 0)],
            secret_key=secret,
        )

    # ---- accounts ----

    def add_account(self) -> Account:
        """Derive and append the next account."""
        if self.secret_key is None:
            raise NotAuthenticated("Unable to create a new account - wallet is locked")
        account = derive_account(self.secret_key, len(self.accounts))
        self.accounts.append(account)
        logger.debug(f"Derived account {account.index}")
        return account

    def restore_accounts(self, count: int,
                         usernames: dict[int, str] | None = None) -> None:
        """
        Grow the account list to at least *count* accounts and apply
        *usernames* (index -> name).  Never shrinks the list.
        """
        if count > len(self.accounts):
            if self.secret_key is None:
                raise NotAuthenticated("Cannot restore accounts - wallet is locked")
            derived = derive_accounts(self.secret_key, count)
            self.accounts.extend(derived[len(self.accounts):])
        for index, username in (usernames or {}).items():
            if 0 <= index < len(self.accounts) and username:
                self.accounts[index].username = username

    def get_account(self, index: int) -> Account:
        if not 0 <= index < len(self.accounts):
            raise AccountNotFound(
                f"No account at index {index} (wallet has {len(self.accounts)})"
            )
        return self.accounts[index]

    # ---- secret handling ----

    def forget_secret(self) -> None:
        """Zero and drop the master secret."""
        wipe(self.secret_key)
        self.secret_key = None

    @property
    def is_unlocked(self) -> bool:
        return self.secret_key is not None

    def __repr__(self) -> str:
        state = "unlocked" if self.is_unlocked else "locked"
        return f"Wallet({len(self.accounts)} accounts, {state})"
