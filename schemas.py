from typing import List, Optional
from pydantic import BaseModel, Field, StrictInt, StrictStr, field_validator
from models import MessageLine
from utils import is_valid_nick, is_valid_password_hash, is_valid_room_id

# Encrypted display names are "iv.ciphertext" base64 tokens; bounded so a
# client cannot grow the membership maps with arbitrarily large keys.
IDENTITY_MAX_LENGTH = 512


class RoomEvent(BaseModel):
    room_id: StrictStr

    @field_validator("room_id")
    @classmethod
    def check_room_id(cls, value):
        if not is_valid_room_id(value):
            raise ValueError("Invalid room ID")
        return value


class JoinEvent(RoomEvent):
    identity: StrictStr = Field(min_length=1, max_length=IDENTITY_MAX_LENGTH)


class MessageEvent(RoomEvent):
    envelope: MessageLine


class TypingEvent(RoomEvent):
    identity: StrictStr = Field(min_length=1, max_length=IDENTITY_MAX_LENGTH)


class ReadEvent(RoomEvent):
    identity: StrictStr = Field(min_length=1, max_length=IDENTITY_MAX_LENGTH)
    up_to_timestamp: StrictInt


class ReactionEvent(RoomEvent):
    message_timestamp: StrictInt
    identity: StrictStr  # plaintext display name

    @field_validator("identity")
    @classmethod
    def check_nick(cls, value):
        if not is_valid_nick(value):
            raise ValueError("Display name must be 1-32 characters")
        return value.strip()


class PinEvent(RoomEvent):
    message_timestamp: StrictInt
    identity: Optional[StrictStr] = Field(default=None, max_length=IDENTITY_MAX_LENGTH)


class HistoryOut(BaseModel):
    lines: List[str]


class FileMeta(BaseModel):
    iv: StrictStr = Field(min_length=1)
    encrypted_display_name: StrictStr = Field(min_length=1)
    name: StrictStr = Field(min_length=1, max_length=255)
    mime: StrictStr = "application/octet-stream"
    size: Optional[StrictInt] = Field(default=None, ge=0)
    timestamp: Optional[StrictInt] = None


class StoredFileMeta(FileMeta):
    room_id: str


class UploadOut(BaseModel):
    ok: bool = True
    file_id: str


class AccountIn(BaseModel):
    nickname: StrictStr
    password_hash: StrictStr  # sha256(sha256(password)), hex

    @field_validator("nickname")
    @classmethod
    def check_nickname(cls, value):
        if not is_valid_nick(value):
            raise ValueError("Nickname must be 1-32 characters")
        return value.strip()

    @field_validator("password_hash")
    @classmethod
    def check_password_hash(cls, value):
        if not is_valid_password_hash(value):
            raise ValueError("Password hash must be 64 hex characters")
        return value


class AccountOut(BaseModel):
    ok: bool = True
    nickname: str
    created_at: int

