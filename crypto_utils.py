import base64
import binascii
import hashlib
import json
from typing import Optional, Tuple
from Crypto.Cipher import AES
from Crypto.Hash import SHA256
from Crypto.Protocol.KDF import PBKDF2
from Crypto.Random import get_random_bytes

# Fixed salt: every client holding the passphrase must land on the same key.
PBKDF2_SALT = b"chatapp-v1"
PBKDF2_ITERATIONS = 100_000
KEY_BYTES = 32
IV_BYTES = 12
TAG_BYTES = 16


class AuthenticationError(ValueError):
    """Ciphertext failed authentication (tampered, truncated or wrong key)."""


class RoomKey:
    """AES-256-GCM key derived from a room passphrase.

    The raw bytes stay inside this object; only the codec functions below
    read them.
    """

    __slots__ = ("_key",)

    def __init__(self, key: bytes):
        if len(key) != KEY_BYTES:
            raise ValueError("Room key must be 32 bytes")
        self._key = bytes(key)

    def _cipher(self, nonce: bytes):
        return AES.new(self._key, AES.MODE_GCM, nonce=nonce, mac_len=TAG_BYTES)

    def __eq__(self, other):
        if not isinstance(other, RoomKey):
            return NotImplemented
        return self._key == other._key

    def __hash__(self):
        return hash(self._key)

    def __repr__(self):
        return "RoomKey(<hidden>)"


def _b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _b64decode(data: str) -> bytes:
    try:
        return base64.b64decode(data, validate=True)
    except (binascii.Error, TypeError, ValueError) as exc:
        raise AuthenticationError("Invalid base64 payload") from exc


def _normalize(passphrase: str) -> bytes:
    if not isinstance(passphrase, str) or not passphrase.strip():
        raise ValueError("Passphrase must be a non-empty string")
    return passphrase.strip().encode("utf-8")


def derive_room_id(passphrase: str) -> str:
    """Hash the trimmed passphrase into the public 64-char hex room id.

    Raises:
        ValueError: If the passphrase is empty or not a string
    """
    return hashlib.sha256(_normalize(passphrase)).hexdigest()


def derive_key(passphrase: str, iterations: int = PBKDF2_ITERATIONS) -> RoomKey:
    """Stretch the trimmed passphrase into the room's AES-256-GCM key.

    The salt is fixed so that strangers sharing only the passphrase agree on
    the key without coordination.
    """
    raw = PBKDF2(
        _normalize(passphrase),
        PBKDF2_SALT,
        dkLen=KEY_BYTES,
        count=iterations,
        hmac_hash_module=SHA256,
    )
    return RoomKey(raw)


def derive_room_credentials(passphrase: str) -> Tuple[str, RoomKey]:
    return derive_room_id(passphrase), derive_key(passphrase)


def encrypt_bytes(key: RoomKey, data: bytes) -> Tuple[str, bytes]:
    """Encrypt a binary payload. Returns (iv_b64, ciphertext || tag)."""
    nonce = get_random_bytes(IV_BYTES)
    ciphertext, tag = key._cipher(nonce).encrypt_and_digest(bytes(data))
    return _b64encode(nonce), ciphertext + tag


def decrypt_bytes(key: RoomKey, iv: str, blob: bytes) -> bytes:
    nonce = _b64decode(iv)
    if len(nonce) != IV_BYTES or len(blob) < TAG_BYTES:
        raise AuthenticationError("Ciphertext is truncated")
    ciphertext, tag = blob[:-TAG_BYTES], blob[-TAG_BYTES:]
    try:
        return key._cipher(nonce).decrypt_and_verify(ciphertext, tag)
    except ValueError as exc:
        raise AuthenticationError("MAC check failed") from exc


def encrypt_text(key: RoomKey, plaintext: str) -> Tuple[str, str]:
    """Encrypt a string. Returns (iv_b64, ciphertext_b64)."""
    iv, blob = encrypt_bytes(key, plaintext.encode("utf-8"))
    return iv, _b64encode(blob)


def decrypt_text(key: RoomKey, iv: str, ciphertext: str) -> str:
    plain = decrypt_bytes(key, iv, _b64decode(ciphertext))
    try:
        return plain.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise AuthenticationError("Plaintext is not valid UTF-8") from exc


def encrypt_display_name(key: RoomKey, name: str) -> str:
    """Encrypt a display name into the compact "iv.ciphertext" form."""
    iv, data = encrypt_text(key, name)
    return f"{iv}.{data}"


def decrypt_display_name(key: RoomKey, token: str) -> str:
    if not isinstance(token, str) or token.count(".") != 1:
        raise AuthenticationError("Malformed encrypted display name")
    iv, data = token.split(".")
    return decrypt_text(key, iv, data)


def decrypt_envelope(key: RoomKey, envelope: dict) -> Optional[dict]:
    """Decrypt a message envelope, or return None if it is not for this key.

    Undecryptable envelopes are dropped rather than reported: the caller
    renders nothing for them.
    """
    try:
        text = decrypt_text(key, envelope["iv"], envelope["ciphertext"])
        name = decrypt_display_name(key, envelope["encrypted_display_name"])
        return {"text": text, "display_name": name, "timestamp": envelope["timestamp"]}
    except (AuthenticationError, KeyError, TypeError):
        return None


def decode_payload(text: str):
    """Interpret a decrypted message body.

    Attachments and replies travel as JSON objects; anything else is plain
    text.
    """
    try:
        value = json.loads(text)
    except ValueError:
        return text
    return value if isinstance(value, dict) else text


def make_server_hash(password: str) -> str:
    """Double SHA-256 of a password, the only form the account server sees."""
    if not isinstance(password, str) or not password:
        raise ValueError("Password must be a non-empty string")
    client_hash = hashlib.sha256(password.encode("utf-8")).hexdigest()
    return hashlib.sha256(client_hash.encode("ascii")).hexdigest()
