"""
idwallet - single-user identity wallet session for decentralized sign-in.

Key features:
- 256-bit master secret with BIP-39 phrase rendering
- Password-encrypted secret blob (AES-256-GCM, PBKDF2)
- Deterministic multi-account derivation (BIP-32 style paths)
- Signed ES256K authentication responses for requesting applications
- Wallet config persisted to a remote identity hub
- Per-(network, address) latest nonce tracking
"""

__version__ = "0.3.0"
__all__ = [
    "crypto_utils",
    "tokens",
    "account",
    "wallet",
    "hub",
    "session",
    "auth",
    "nonces",
    "errors",
    "config",
    "logging_config",
    "runtime",
]
