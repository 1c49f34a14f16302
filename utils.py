import re
import secrets
import time

ROOM_ID_RE = re.compile(r"^[a-f0-9]{64}$")
FILE_ID_RE = re.compile(r"^[a-f0-9]{32}$")
PASSWORD_HASH_RE = ROOM_ID_RE

NICK_MIN_LENGTH = 1
NICK_MAX_LENGTH = 32


def now_ms() -> int:
    return int(time.time() * 1000)


def is_valid_room_id(room_id) -> bool:
    return isinstance(room_id, str) and bool(ROOM_ID_RE.fullmatch(room_id))


def is_valid_file_id(file_id) -> bool:
    return isinstance(file_id, str) and bool(FILE_ID_RE.fullmatch(file_id))


def is_valid_nick(nick) -> bool:
    return isinstance(nick, str) and NICK_MIN_LENGTH <= len(nick.strip()) <= NICK_MAX_LENGTH


def is_valid_password_hash(value) -> bool:
    return isinstance(value, str) and bool(PASSWORD_HASH_RE.fullmatch(value))


def new_file_id() -> str:
    return secrets.token_hex(16)
