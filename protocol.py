"""
protocol.py
-----------
Wire protocol for dotchat.

Frame layout on the TCP stream:
  [4 bytes length (uint32, network order)] [length bytes of UTF-8 JSON]

JSON envelopes:
  {"type": "TEXT",    "id": ..., "payload": {"text": ...}}
  {"type": "COMMAND", "id": ..., "payload": {"name": ..., "args": ..., "content": <b64url>?, "hostname": ...?}}
  {"type": "OK",      "ref": ..., "payload": {"text": ...}}
  {"type": "ERROR",   "ref": ..., "payload": {"text": ...}}

Binary content travels inside the JSON as base64url (no padding).
"""

import asyncio
import base64
import binascii
import json
import struct
import uuid
from dataclasses import dataclass, field
from typing import Optional, Union

COMMAND_PREFIX = "."

HEADER = struct.Struct("!I")
MAX_FRAME_SIZE = 32 * 1024 * 1024  # 32 MB


class FrameError(ValueError):
    """Malformed, truncated or oversized wire data."""


class TransportError(ConnectionError):
    """The peer went away (closed, reset, broken pipe)."""


# ---------------------------------------------------------------------------
# Base64url (no padding in JSON)
# ---------------------------------------------------------------------------

def b64url_encode(data: Union[bytes, bytearray, memoryview]) -> str:
    if not isinstance(data, (bytes, bytearray, memoryview)):
        raise TypeError("b64url_encode expects bytes-like input")
    return base64.urlsafe_b64encode(bytes(data)).rstrip(b"=").decode("ascii")


def b64url_decode(s: Union[str, bytes]) -> bytes:
    if isinstance(s, bytes):
        s = s.decode("ascii")
    if not isinstance(s, str):
        raise TypeError("b64url_decode expects str/bytes input")
    pad = "=" * (-len(s) % 4)
    return base64.urlsafe_b64decode(s + pad)


# ---------------------------------------------------------------------------
# Message types
# ---------------------------------------------------------------------------

def new_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class Text:
    body: str
    msg_id: str = field(default_factory=new_id)


@dataclass(frozen=True)
class Command:
    name: str
    args: str = ""
    payload: Optional[bytes] = None
    msg_id: str = field(default_factory=new_id)
    # Sender's host name, attached by the client to .info
    hostname: str = ""


Message = Union[Text, Command]

OK = "OK"
ERROR = "ERROR"


@dataclass(frozen=True)
class Response:
    status: str
    body: str
    ref: str = ""

    @property
    def ok(self) -> bool:
        return self.status == OK

    def __str__(self):
        return f"[{self.status}] {self.body}"


def parse_line(line: str) -> Message:
    """Classify one input line: '.name args' is a Command, anything else is Text."""
    if line.startswith(COMMAND_PREFIX):
        name, _, args = line[len(COMMAND_PREFIX):].partition(" ")
        return Command(name=name, args=args)
    return Text(body=line)


# ---------------------------------------------------------------------------
# Framing
# ---------------------------------------------------------------------------

def frame(content: bytes) -> bytes:
    return HEADER.pack(len(content)) + content


def check_length(length: int, max_size: int = MAX_FRAME_SIZE) -> None:
    if length == 0:
        raise FrameError("empty frame")
    if length > max_size:
        raise FrameError(f"frame of {length} bytes exceeds limit of {max_size}")


def unframe(data: bytes, max_size: int = MAX_FRAME_SIZE) -> bytes:
    """Strip the length prefix from one complete frame."""
    if len(data) < HEADER.size:
        raise FrameError(f"truncated header: {len(data)} of {HEADER.size} bytes")
    (length,) = HEADER.unpack_from(data)
    check_length(length, max_size)
    content = data[HEADER.size:]
    if len(content) < length:
        raise FrameError(f"truncated frame: {len(content)} of {length} bytes")
    if len(content) > length:
        raise FrameError(f"{len(content) - length} trailing bytes after frame")
    return content


# ---------------------------------------------------------------------------
# Envelope encode / decode
# ---------------------------------------------------------------------------

def _dump(envelope: dict) -> bytes:
    return json.dumps(envelope, separators=(",", ":")).encode("utf-8")


def _load(content: bytes) -> dict:
    try:
        envelope = json.loads(content.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise FrameError(f"invalid JSON: {e}") from e
    if not isinstance(envelope, dict):
        raise FrameError("envelope is not a JSON object")
    payload = envelope.get("payload")
    if not isinstance(payload, dict):
        raise FrameError("envelope has no payload object")
    return envelope


def _field(mapping: dict, key: str, default=None) -> str:
    value = mapping.get(key, default)
    if not isinstance(value, str):
        raise FrameError(f"field '{key}' missing or not a string")
    return value


def message_to_dict(message: Message) -> dict:
    if isinstance(message, Text):
        return {"type": "TEXT", "id": message.msg_id, "payload": {"text": message.body}}
    payload = {"name": message.name, "args": message.args}
    if message.payload is not None:
        payload["content"] = b64url_encode(message.payload)
    if message.hostname:
        payload["hostname"] = message.hostname
    return {"type": "COMMAND", "id": message.msg_id, "payload": payload}


def message_from_dict(envelope: dict) -> Message:
    mtype = envelope.get("type")
    msg_id = _field(envelope, "id")
    payload = envelope["payload"]

    if mtype == "TEXT":
        return Text(body=_field(payload, "text"), msg_id=msg_id)

    if mtype == "COMMAND":
        content = None
        if "content" in payload:
            try:
                content = b64url_decode(_field(payload, "content"))
            except (binascii.Error, ValueError) as e:
                raise FrameError(f"invalid base64url content: {e}") from e
        return Command(
            name=_field(payload, "name"),
            args=_field(payload, "args", ""),
            payload=content,
            msg_id=msg_id,
            hostname=_field(payload, "hostname", ""),
        )

    raise FrameError(f"unknown message type: {mtype!r}")


def encode(message: Message) -> bytes:
    return frame(_dump(message_to_dict(message)))


def decode_content(content: bytes) -> Message:
    return message_from_dict(_load(content))


def decode(data: bytes, max_size: int = MAX_FRAME_SIZE) -> Message:
    return decode_content(unframe(data, max_size))


def encode_response(response: Response) -> bytes:
    return frame(_dump({
        "type": response.status,
        "ref": response.ref,
        "payload": {"text": response.body},
    }))


def decode_response_content(content: bytes) -> Response:
    envelope = _load(content)
    status = envelope.get("type")
    if status not in (OK, ERROR):
        raise FrameError(f"unknown response type: {status!r}")
    return Response(
        status=status,
        body=_field(envelope["payload"], "text"),
        ref=_field(envelope, "ref", ""),
    )


def decode_response(data: bytes, max_size: int = MAX_FRAME_SIZE) -> Response:
    return decode_response_content(unframe(data, max_size))


# ---------------------------------------------------------------------------
# Async stream I/O
# ---------------------------------------------------------------------------

async def read_frame(reader: asyncio.StreamReader, max_size: int = MAX_FRAME_SIZE) -> Optional[bytes]:
    """
    Read one frame's content from the stream.
    Returns None on a clean EOF between frames; EOF inside a frame is a FrameError.
    """
    try:
        header = await reader.readexactly(HEADER.size)
    except asyncio.IncompleteReadError as e:
        if not e.partial:
            return None
        raise FrameError(f"truncated header: {len(e.partial)} of {HEADER.size} bytes") from e
    except (ConnectionError, OSError) as e:
        raise TransportError(str(e)) from e

    (length,) = HEADER.unpack(header)
    check_length(length, max_size)

    try:
        return await reader.readexactly(length)
    except asyncio.IncompleteReadError as e:
        raise FrameError(f"truncated frame: {len(e.partial)} of {length} bytes") from e
    except (ConnectionError, OSError) as e:
        raise TransportError(str(e)) from e


async def write_frame(writer: asyncio.StreamWriter, data: bytes) -> None:
    """Write an already framed buffer and wait until it is flushed."""
    try:
        writer.write(data)
        await writer.drain()
    except (ConnectionError, OSError) as e:
        raise TransportError(str(e)) from e


async def read_message(reader: asyncio.StreamReader, max_size: int = MAX_FRAME_SIZE) -> Optional[Message]:
    content = await read_frame(reader, max_size)
    return None if content is None else decode_content(content)


async def read_response(reader: asyncio.StreamReader, max_size: int = MAX_FRAME_SIZE) -> Optional[Response]:
    content = await read_frame(reader, max_size)
    return None if content is None else decode_response_content(content)
