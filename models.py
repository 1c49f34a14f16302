import json
from typing import Annotated, Literal, Optional, Union
from pydantic import BaseModel, Field, StrictInt, StrictStr, TypeAdapter

SystemSubtype = Literal["join", "leave", "pin", "unpin"]


class MessageLine(BaseModel):
    """A chat message exactly as it travels and as it is stored."""
    kind: Literal["message"] = "message"
    iv: StrictStr = Field(min_length=1)
    ciphertext: StrictStr = Field(min_length=1)
    timestamp: StrictInt
    encrypted_display_name: StrictStr = Field(min_length=1)


class SystemLine(BaseModel):
    """Presence and pin notices, stored in the same log as messages."""
    kind: Literal["system"] = "system"
    subtype: SystemSubtype
    encrypted_display_name: StrictStr
    timestamp: StrictInt
    message_timestamp: Optional[StrictInt] = None


LogLine = Annotated[Union[MessageLine, SystemLine], Field(discriminator="kind")]

_log_line_adapter = TypeAdapter(LogLine)


def parse_log_line(line: str) -> Union[MessageLine, SystemLine]:
    """Parse one stored line. Raises ValueError (pydantic ValidationError) on bad input."""
    return _log_line_adapter.validate_json(line)


def dump_log_line(entry: Union[MessageLine, SystemLine]) -> str:
    return json.dumps(entry.model_dump(exclude_none=True), separators=(",", ":"))
