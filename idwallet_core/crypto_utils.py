"""
Cryptographic primitives for idwallet.

Thin wrappers over ``ecdsa`` (secp256k1) and ``pycryptodome`` so the rest of
the package never touches curve or cipher APIs directly:

  - Entropy generation and in-place wiping of secret buffers
  - SHA-256 / Hash160 / c32check address encoding
  - Password encryption of the master secret (AES-256-GCM, PBKDF2)
  - ES256K signing and verification (raw ``r || s`` signatures)
  - ECIES encryption to an application's transit public key
"""

from __future__ import annotations

import hashlib
import hmac
import os

from Crypto.Cipher import AES
from Crypto.Hash import RIPEMD160
from Crypto.Util.Padding import pad, unpad
from ecdsa import ECDH, SECP256k1, SigningKey, VerifyingKey
from ecdsa.util import sigdecode_string, sigencode_string

from idwallet_core.errors import InvalidPassword


# ===================================================================
#  Entropy and secret buffers
# ===================================================================

def generate_secret_key(strength: int = 256) -> bytearray:
    """Return *strength* bits of OS entropy as a wipeable buffer."""
    if strength not in (128, 160, 192, 224, 256):
        raise ValueError("Strength must be 128/160/192/224/256")
    return bytearray(os.urandom(strength // 8))


def wipe(buf: bytearray | None) -> None:
    """Zero a secret buffer in place."""
    if buf is None:
        return
    for i in range(len(buf)):
        buf[i] = 0


# ===================================================================
#  Hashing
# ===================================================================

def sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def sha256d(data: bytes) -> bytes:
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def hash160(data: bytes) -> bytes:
    """RIPEMD-160 of SHA-256."""
    return RIPEMD160.new(sha256(data)).digest()


# ===================================================================
#  c32check (Crockford base32 with checksum)
# ===================================================================

C32_ALPHABET = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"


def c32_encode(data: bytes) -> str:
    """Encode bytes as c32, one leading ``0`` per leading zero byte."""
    n = int.from_bytes(data, "big")
    digits = []
    while n:
        n, rem = divmod(n, 32)
        digits.append(C32_ALPHABET[rem])
    zeros = len(data) - len(data.lstrip(b"\x00"))
    return "0" * zeros + "".join(reversed(digits))


def c32_decode(text: str) -> bytes:
    text = text.upper().replace("O", "0").replace("L", "1").replace("I", "1")
    n = 0
    for ch in text:
        idx = C32_ALPHABET.find(ch)
        if idx < 0:
            raise ValueError(f"Invalid c32 character: {ch!r}")
        n = n * 32 + idx
    zeros = len(text) - len(text.lstrip("0"))
    body = n.to_bytes((n.bit_length() + 7) // 8, "big") if n else b""
    return b"\x00" * zeros + body


def c32check_encode(version: int, data: bytes) -> str:
    if not 0 <= version < 32:
        raise ValueError("c32check version must be in [0, 32)")
    checksum = sha256d(bytes([version]) + data)[:4]
    return C32_ALPHABET[version] + c32_encode(data + checksum)


def c32check_decode(text: str) -> tuple[int, bytes]:
    version = C32_ALPHABET.find(text[0].upper())
    raw = c32_decode(text[1:])
    data, checksum = raw[:-4], raw[-4:]
    if sha256d(bytes([version]) + data)[:4] != checksum:
        raise ValueError("c32check checksum mismatch")
    return version, data


def c32_address(version: int, hash160_bytes: bytes) -> str:
    """Build an ``S``-prefixed account address."""
    if len(hash160_bytes) != 20:
        raise ValueError("Address hash must be 20 bytes")
    return "S" + c32check_encode(version, hash160_bytes)


# ===================================================================
#  Password encryption of the master secret
# ===================================================================

KDF_ITERATIONS = 600_000
_SALT_LEN = 16
_NONCE_LEN = 12
_TAG_LEN = 16


def _password_key(password: str, salt: bytes) -> bytes:
    return hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, KDF_ITERATIONS)


def encrypt_secret(secret: bytes | bytearray, password: str) -> str:
    """
    Encrypt *secret* under *password*.

    Returns hex of ``salt || nonce || tag || ciphertext``.
    """
    salt = os.urandom(_SALT_LEN)
    nonce = os.urandom(_NONCE_LEN)
    cipher = AES.new(_password_key(password, salt), AES.MODE_GCM, nonce=nonce)
    ciphertext, tag = cipher.encrypt_and_digest(bytes(secret))
    return (salt + nonce + tag + ciphertext).hex()


def decrypt_secret(blob_hex: str, password: str) -> bytearray:
    """Decrypt a blob from :func:`encrypt_secret`. Raises ``InvalidPassword``."""
    try:
        blob = bytes.fromhex(blob_hex)
    except (TypeError, ValueError):
        raise InvalidPassword() from None
    header = _SALT_LEN + _NONCE_LEN + _TAG_LEN
    if len(blob) <= header:
        raise InvalidPassword()
    salt = blob[:_SALT_LEN]
    nonce = blob[_SALT_LEN:_SALT_LEN + _NONCE_LEN]
    tag = blob[_SALT_LEN + _NONCE_LEN:header]
    cipher = AES.new(_password_key(password, salt), AES.MODE_GCM, nonce=nonce)
    try:
        return bytearray(cipher.decrypt_and_verify(blob[header:], tag))
    except ValueError:
        raise InvalidPassword() from None


def encrypt_with_key(key: bytes, data: bytes) -> bytes:
    """AES-256-GCM under a raw 32-byte key. Returns ``nonce || tag || ct``."""
    nonce = os.urandom(_NONCE_LEN)
    cipher = AES.new(key, AES.MODE_GCM, nonce=nonce)
    ciphertext, tag = cipher.encrypt_and_digest(data)
    return nonce + tag + ciphertext


def decrypt_with_key(key: bytes, blob: bytes) -> bytes:
    """Inverse of :func:`encrypt_with_key`. Raises ValueError on tamper."""
    nonce, tag = blob[:_NONCE_LEN], blob[_NONCE_LEN:_NONCE_LEN + _TAG_LEN]
    cipher = AES.new(key, AES.MODE_GCM, nonce=nonce)
    return cipher.decrypt_and_verify(blob[_NONCE_LEN + _TAG_LEN:], tag)


# ===================================================================
#  secp256k1 keys and signatures
# ===================================================================

def public_key_from_private(private_key: bytes, compressed: bool = True) -> bytes:
    sk = SigningKey.from_string(private_key, curve=SECP256k1)
    encoding = "compressed" if compressed else "uncompressed"
    return sk.get_verifying_key().to_string(encoding)


def sign(private_key: bytes, message: bytes) -> bytes:
    """Deterministic (RFC 6979) ECDSA over SHA-256; 64-byte ``r || s``."""
    sk = SigningKey.from_string(private_key, curve=SECP256k1)
    return sk.sign_deterministic(message, hashfunc=hashlib.sha256, sigencode=sigencode_string)


def verify(public_key: bytes, message: bytes, signature: bytes) -> bool:
    try:
        vk = VerifyingKey.from_string(public_key, curve=SECP256k1)
        return vk.verify(signature, message, hashfunc=hashlib.sha256, sigdecode=sigdecode_string)
    except Exception:
        return False


# ===================================================================
#  ECIES to a transit key
# ===================================================================

def _shared_keys(private_key: SigningKey, public_key: VerifyingKey) -> tuple[bytes, bytes]:
    ecdh = ECDH(curve=SECP256k1, private_key=private_key, public_key=public_key)
    shared = hashlib.sha512(ecdh.generate_sharedsecret_bytes()).digest()
    return shared[:32], shared[32:]


def encrypt_ecies(public_key_hex: str, plaintext: bytes, was_string: bool = True) -> dict:
    """
    Encrypt *plaintext* to a secp256k1 public key.

    AES-256-CBC under the first half of SHA-512(ECDH), authenticated with
    HMAC-SHA256 (second half) over ``iv || ephemeral_pk || ciphertext``.
    Raises ValueError if *public_key_hex* is not a valid curve point.
    """
    try:
        recipient = VerifyingKey.from_string(bytes.fromhex(public_key_hex), curve=SECP256k1)
    except Exception as exc:
        raise ValueError(f"Invalid transit public key: {exc}") from exc
    ephemeral = SigningKey.generate(curve=SECP256k1)
    ephemeral_pk = ephemeral.get_verifying_key().to_string("compressed")
    enc_key, mac_key = _shared_keys(ephemeral, recipient)
    iv = os.urandom(16)
    ciphertext = AES.new(enc_key, AES.MODE_CBC, iv=iv).encrypt(pad(plaintext, AES.block_size))
    mac = hmac.new(mac_key, iv + ephemeral_pk + ciphertext, hashlib.sha256).digest()
    return {
        "iv": iv.hex(),
        "ephemeralPK": ephemeral_pk.hex(),
        "cipherText": ciphertext.hex(),
        "mac": mac.hex(),
        "wasString": was_string,
    }


def decrypt_ecies(private_key: bytes, envelope: dict) -> bytes:
    """Decrypt an :func:`encrypt_ecies` envelope. Raises ValueError on bad MAC."""
    sk = SigningKey.from_string(private_key, curve=SECP256k1)
    ephemeral_pk = bytes.fromhex(envelope["ephemeralPK"])
    enc_key, mac_key = _shared_keys(sk, VerifyingKey.from_string(ephemeral_pk, curve=SECP256k1))
    iv = bytes.fromhex(envelope["iv"])
    ciphertext = bytes.fromhex(envelope["cipherText"])
    expected = hmac.new(mac_key, iv + ephemeral_pk + ciphertext, hashlib.sha256).digest()
    if not hmac.compare_digest(expected, bytes.fromhex(envelope["mac"])):
        raise ValueError("ECIES MAC mismatch")
    return unpad(AES.new(enc_key, AES.MODE_CBC, iv=iv).decrypt(ciphertext), AES.block_size)


# ===================================================================
#  Base58Check (identity addresses)
# ===================================================================

B58_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"


def base58_encode(data: bytes) -> str:
    n = int.from_bytes(data, "big")
    out = []
    while n:
        n, rem = divmod(n, 58)
        out.append(B58_ALPHABET[rem])
    zeros = len(data) - len(data.lstrip(b"\x00"))
    return "1" * zeros + "".join(reversed(out))


def base58check_encode(version: int, payload: bytes) -> str:
    raw = bytes([version]) + payload
    return base58_encode(raw + sha256d(raw)[:4])


def btc_address(public_key: bytes) -> str:
    """Version-0 P2PKH address of a (compressed) public key."""
    return base58check_encode(0x00, hash160(public_key))
