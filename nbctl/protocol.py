"""
nbctl Protocol Definitions
Commands, message building and response framing for the notebook server.

All messages are newline-terminated JSON objects with a "type" field.

Client -> Server (plain)
  {"type":"run","content":"/home/student/analysis.ipynb"}

Client -> Server (signed)
  {"hmac":"<base64 HMAC-SHA256>","payload":"{\"type\":\"stop\",\"content\":\"\"}"}

Server -> Client (progress, may repeat during run)
  {"type":"progress_update","content":"50%"}

Server -> Client (terminal, any other type)
  {"type":"done","content":"ok"}
"""

import json
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, Optional

from . import crypto


COMMANDS = ("run", "close", "stop", "isopen", "isready", "status")

# Commands whose content is a notebook path
NOTEBOOK_COMMANDS = {"run", "close", "isopen"}

# Only understood by servers started with a shared key
SIGNED_ONLY_COMMANDS = {"status"}

PROGRESS_UPDATE = "progress_update"

# Longest response line accepted before the newline arrives
MAX_LINE_SIZE = 16 * 1024 * 1024

RESOLVE_RELATIVE = "resolve"
REQUIRE_ABSOLUTE = "absolute"
PATH_POLICIES = (RESOLVE_RELATIVE, REQUIRE_ABSOLUTE)


class UsageError(ValueError):
    """Raised for bad command-line input, before any network activity."""


class ProtocolError(ValueError):
    """Raised when the server sends a line that is not a valid response."""


@dataclass(frozen=True)
class Command:
    """A single request for the notebook server."""

    type: str
    content: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {"type": self.type, "content": self.content}

    def serialize(self) -> str:
        return _dumps(self.to_dict())


@dataclass(frozen=True)
class Response:
    """A parsed server response and the line it came from."""

    data: Dict[str, Any]
    raw: str = field(repr=False)

    @property
    def type(self) -> str:
        return self.data["type"]

    @property
    def is_progress(self) -> bool:
        return self.type == PROGRESS_UPDATE


def _dumps(obj: Dict) -> str:
    return json.dumps(obj, separators=(',', ':'), ensure_ascii=False)


def default_path_policy(signed: bool) -> str:
    """Signed clients only accept absolute paths; plain ones resolve relative ones."""
    return REQUIRE_ABSOLUTE if signed else RESOLVE_RELATIVE


def resolve_notebook(path: Optional[str], policy: str = RESOLVE_RELATIVE) -> str:
    """Apply a path policy to a notebook argument."""
    if not path:
        raise UsageError("No notebook specified.")

    if policy == RESOLVE_RELATIVE:
        return os.path.abspath(path)
    if policy == REQUIRE_ABSOLUTE:
        if not os.path.isabs(path):
            raise UsageError(f"Notebook path must be absolute: {path}")
        return path
    raise UsageError(f"Unknown path policy: {policy}")


def build_command(name: Optional[str], argument: Optional[str] = None,
                  path_policy: Optional[str] = None, signed: bool = False) -> Command:
    """
    Build the Command for a command name and its optional argument.

    Raises UsageError for unknown commands, signed-only commands on an
    unsigned client, and missing or rejected notebook paths.
    """
    if name not in COMMANDS:
        raise UsageError("Invalid command.")
    if name in SIGNED_ONLY_COMMANDS and not signed:
        raise UsageError(f"Command '{name}' requires a shared key.")

    if name in NOTEBOOK_COMMANDS:
        policy = path_policy or default_path_policy(signed)
        return Command(name, resolve_notebook(argument, policy))
    return Command(name)


def build_message(command: Command, key: Optional[crypto.Key] = None) -> bytes:
    """
    Serialize a command into one wire message.

    With a key, the command JSON is signed and sent as the string payload
    of an envelope. The message always ends with a single newline.
    """
    if command.type not in COMMANDS:
        raise UsageError("Invalid command.")

    payload = command.serialize()
    if key is not None:
        payload = _dumps(crypto.wrap_envelope(payload, key))
    return (payload + "\n").encode('utf-8')


def parse_response(line: bytes) -> Response:
    """Decode one response line (without its newline)."""
    try:
        raw = line.decode('utf-8')
        data = json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ProtocolError(f"Malformed response {line[:80]!r}: {e}") from e

    if not isinstance(data, dict):
        raise ProtocolError(f"Response is not a JSON object: {raw[:80]}")
    if not isinstance(data.get("type"), str):
        raise ProtocolError(f"Response has no 'type' field: {raw[:80]}")
    return Response(data, raw)


class ResponseBuffer:
    """
    Accumulates socket chunks and yields complete response lines.

    Iteration is lazy: each message is cut from the front of the buffer
    before the next boundary is searched, so a consumer that stops at a
    terminal message leaves the rest untouched.

    A line longer than ``max_line_size`` bytes raises ProtocolError, even
    before its newline has arrived.
    """

    def __init__(self, max_line_size: int = MAX_LINE_SIZE):
        self.max_line_size = max_line_size
        self._data = bytearray()
        self._scanned = 0  # bytes already known to hold no newline

    def __len__(self):
        return len(self._data)

    def feed(self, chunk: bytes) -> None:
        self._data += chunk

    def next_line(self) -> Optional[bytes]:
        """Remove and return the first complete line, or None if there is none yet."""
        end = self._data.find(b"\n", self._scanned)
        if end == -1:
            self._scanned = len(self._data)
            if self._scanned > self.max_line_size:
                raise ProtocolError(f"Response line exceeds {self.max_line_size} bytes")
            return None
        if end > self.max_line_size:
            raise ProtocolError(f"Response line exceeds {self.max_line_size} bytes")

        line = bytes(self._data[:end])
        del self._data[:end + 1]
        self._scanned = 0
        return line

    def __iter__(self) -> Iterator[Response]:
        while True:
            line = self.next_line()
            if line is None:
                return
            if not line.strip():
                continue
            yield parse_response(line.rstrip(b"\r"))
