"""
Account derivation for idwallet.

Every account is a pure function of ``(master secret, index)``:

  - BIP-39: the 256-bit secret renders as a 24-word phrase whose seed is
    the BIP-32 root
  - STX key         m/44'/5757'/0'/0/<index>
  - identity key    m/888'/0'/<index>'
  - apps node       m/888'/0'/<index>'/0'
  - account salt    sha256 of the identities-root public key (m/888'/0')

Nothing here performs I/O or keeps state between calls.
"""

from __future__ import annotations

import hashlib
import hmac
import struct
from dataclasses import dataclass
from enum import IntEnum

from ecdsa import SECP256k1
from mnemonic import Mnemonic

from idwallet_core.crypto_utils import (
    btc_address,
    c32_address,
    hash160,
    public_key_from_private,
    sha256,
)


# ===================================================================
#  BIP-39 phrases
# ===================================================================

_MNEMONIC = Mnemonic("english")


def secret_to_phrase(secret: bytes | bytearray) -> str:
    """Render a master secret as its BIP-39 phrase."""
    return _MNEMONIC.to_mnemonic(bytes(secret))


def phrase_to_secret(phrase: str) -> bytearray:
    """Parse a BIP-39 phrase back into secret bytes."""
    normalized = " ".join(phrase.strip().lower().split())
    if not _MNEMONIC.check(normalized):
        raise ValueError("Invalid secret key phrase")
    return bytearray(_MNEMONIC.to_entropy(normalized))


def secret_to_seed(secret: bytes | bytearray) -> bytes:
    """64-byte BIP-39 seed of the secret's phrase (empty passphrase)."""
    return Mnemonic.to_seed(secret_to_phrase(secret))


# ===================================================================
#  HD Key Derivation (BIP-32)
# ===================================================================

class HDNode:
    """
    Hierarchical Deterministic key derivation node.

    Implements BIP-32 private derivation with HMAC-SHA512.
    """

    HARDENED = 0x80000000

    def __init__(self, private_key: bytes, chain_code: bytes, depth: int = 0,
                 index: int = 0):
        self.private_key = private_key
        self.chain_code = chain_code
        self.depth = depth
        self.index = index

    @classmethod
    def from_seed(cls, seed: bytes) -> HDNode:
        """Create master node from a 64-byte seed."""
        I = hmac.new(b"Bitcoin seed", seed, hashlib.sha512).digest()
        return cls(private_key=I[:32], chain_code=I[32:])

    @classmethod
    def from_extended(cls, extended_hex: str) -> HDNode:
        """Rebuild a node from :meth:`to_extended` output (depth is not kept)."""
        raw = bytes.fromhex(extended_hex)
        if len(raw) != 64:
            raise ValueError("Extended key must be 64 bytes")
        return cls(private_key=raw[:32], chain_code=raw[32:])

    def to_extended(self) -> str:
        return (self.private_key + self.chain_code).hex()

    @property
    def public_key(self) -> bytes:
        """Compressed (33-byte) public key."""
        return public_key_from_private(self.private_key)

    def derive_child(self, index: int) -> HDNode:
        """Derive a child node at the given index."""
        if index >= self.HARDENED:
            data = b"\x00" + self.private_key + struct.pack(">I", index)
        else:
            data = self.public_key + struct.pack(">I", index)

        I = hmac.new(self.chain_code, data, hashlib.sha512).digest()
        child_key_int = (int.from_bytes(I[:32], "big") +
                         int.from_bytes(self.private_key, "big")) % SECP256k1.order

        return HDNode(
            private_key=child_key_int.to_bytes(32, "big"),
            chain_code=I[32:],
            depth=self.depth + 1,
            index=index,
        )

    def derive_path(self, path: str) -> HDNode:
        """Derive from a path string like "m/44'/5757'/0'/0/0"."""
        if path == "m":
            return self
        if path.startswith("m/"):
            path = path[2:]

        node = self
        for component in path.split("/"):
            if component.endswith("'"):
                index = int(component[:-1]) + self.HARDENED
            else:
                index = int(component)
            node = node.derive_child(index)
        return node


STX_DERIVATION_PATH = "m/44'/5757'/0'/0"
IDENTITIES_ROOT_PATH = "m/888'/0'"
WALLET_CONFIG_PATH = "m/44/5757'/0'/1"


# ===================================================================
#  Accounts
# ===================================================================

class AddressVersion(IntEnum):
    """c32 version byte of a single-sig account address."""
    MAINNET = 22  # SP...
    TESTNET = 26  # ST...

    @classmethod
    def for_network(cls, network: str) -> AddressVersion:
        try:
            return cls[network.upper()]
        except KeyError:
            raise ValueError(f"Unknown network: {network!r}") from None


@dataclass
class Account:
    """One derived identity. ``username`` is the only mutable field."""
    index: int
    stx_private_key: bytes
    data_private_key: bytes
    apps_key: str           # extended private key of the apps node (hex)
    salt: str
    username: str | None = None

    @property
    def stx_public_key(self) -> bytes:
        return public_key_from_private(self.stx_private_key)

    @property
    def data_public_key(self) -> bytes:
        return public_key_from_private(self.data_private_key)

    @property
    def identity_address(self) -> str:
        return btc_address(self.data_public_key)

    def to_dict(self) -> dict:
        """Public view, safe to log or persist."""
        return {
            "index": self.index,
            "username": self.username,
            "identity_address": self.identity_address,
            "stx_public_key": self.stx_public_key.hex(),
        }

    def __repr__(self) -> str:
        return f"Account(index={self.index}, username={self.username!r})"


def _derive_from_root(root: HDNode, index: int) -> Account:
    if index < 0:
        raise ValueError("Account index must be non-negative")
    identities = root.derive_path(IDENTITIES_ROOT_PATH)
    identity = identities.derive_child(index + HDNode.HARDENED)
    apps = identity.derive_child(HDNode.HARDENED)
    stx = root.derive_path(f"{STX_DERIVATION_PATH}/{index}")
    return Account(
        index=index,
        stx_private_key=stx.private_key,
        data_private_key=identity.private_key,
        apps_key=apps.to_extended(),
        salt=sha256(identities.public_key).hex(),
    )


def derive_account(secret: bytes | bytearray, index: int) -> Account:
    """Derive the account at *index* under *secret*."""
    return _derive_from_root(HDNode.from_seed(secret_to_seed(secret)), index)


def derive_accounts(secret: bytes | bytearray, count: int) -> list[Account]:
    """Derive accounts ``0 .. count-1`` sharing one root computation."""
    root = HDNode.from_seed(secret_to_seed(secret))
    return [_derive_from_root(root, i) for i in range(count)]


def derive_config_private_key(secret: bytes | bytearray) -> bytes:
    root = HDNode.from_seed(secret_to_seed(secret))
    return root.derive_path(WALLET_CONFIG_PATH).private_key


def get_stx_address(account: Account,
                    version: AddressVersion = AddressVersion.TESTNET) -> str:
    return c32_address(int(version), hash160(account.stx_public_key))


def get_display_name(account: Account) -> str:
    if account.username:
        return account.username.split(".")[0]
    return f"Account {account.index + 1}"


def get_app_private_key(account: Account, app_domain: str) -> bytes:
    """Per-application private key: hardened child of the apps node."""
    digest = sha256(f"{app_domain}{account.salt}".encode("utf-8"))
    child_index = int.from_bytes(digest[:4], "big") & 0x7FFFFFFF
    apps = HDNode.from_extended(account.apps_key)
    return apps.derive_child(child_index + HDNode.HARDENED).private_key
