"""
Error taxonomy for idwallet.

Every failure a caller is expected to handle is a ``WalletError`` subclass
carrying an ``ErrorKind``, so the UI layer can branch on the class or on
``err.kind`` without parsing messages.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    NOT_AUTHENTICATED = "not_authenticated"
    NO_STORED_KEY = "no_stored_key"
    INVALID_PASSWORD = "invalid_password"
    MALFORMED_TOKEN = "malformed_token"
    MANIFEST_UNAVAILABLE = "manifest_unavailable"
    ACCOUNT_NOT_FOUND = "account_not_found"
    REMOTE_STORAGE_FAILURE = "remote_storage_failure"


class WalletError(Exception):
    # general container for wallet errors
    kind: ErrorKind

    def __init__(self, message: str = ""):
        super().__init__(message or self.kind.value.replace("_", " "))


class NotAuthenticated(WalletError):
    # operation requires an unlocked, signed-in session
    kind = ErrorKind.NOT_AUTHENTICATED


class NoStoredKey(WalletError):
    # unlock attempted with no encrypted secret to unlock
    kind = ErrorKind.NO_STORED_KEY


class InvalidPassword(WalletError):
    # wrong password or corrupted ciphertext, deliberately indistinguishable
    kind = ErrorKind.INVALID_PASSWORD


class MalformedToken(WalletError):
    # inbound auth request undecodable or missing required claims
    kind = ErrorKind.MALFORMED_TOKEN


class ManifestUnavailable(WalletError):
    # app manifest fetch or parse failed
    kind = ErrorKind.MANIFEST_UNAVAILABLE


class AccountNotFound(WalletError):
    # account index out of range
    kind = ErrorKind.ACCOUNT_NOT_FOUND


class RemoteStorageFailure(WalletError):
    # hub read or write failed
    kind = ErrorKind.REMOTE_STORAGE_FAILURE
