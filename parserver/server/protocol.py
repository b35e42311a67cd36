"""parserver protocol — one text line in, one ``<status>;<message>`` line out.

Grammar:
    set <pin> <hi|low|toggle>
    strobe <pin> <milliseconds>

``<pin>`` is two characters, a marker followed by a digit 0-7 (``p3``).
"""

from dataclasses import dataclass
from enum import Enum

from .pins import PIN_COUNT

MAX_REQUEST = 127  # bytes read per connection


class ProtocolError(ValueError):
    """Malformed request. The message becomes the rejection reply."""


class PinAction(Enum):
    HI = "hi"
    LOW = "low"
    TOGGLE = "toggle"


@dataclass(frozen=True, slots=True)
class SetCommand:
    pin: int
    action: PinAction


@dataclass(frozen=True, slots=True)
class StrobeCommand:
    pin: int
    duration_ms: int


@dataclass(frozen=True, slots=True)
class UnknownCommand:
    verb: str


Command = SetCommand | StrobeCommand | UnknownCommand


# ── Decode ────────────────────────────────────────────────────────────

def decode_request(data: bytes) -> str:
    """Raw request bytes → text line with the trailing newline removed."""
    line = data[:MAX_REQUEST].decode("ascii", errors="replace")
    if line.endswith("\n"):
        line = line[:-1]
        if line.endswith("\r"):
            line = line[:-1]
    return line


def tokenize(line: str) -> tuple[str, ...]:
    """Split on spaces. Runs of spaces never produce empty tokens."""
    return tuple(tok for tok in line.split(" ") if tok)


def parse_pin(token: str) -> int:
    """``p3`` → 3. The first character is a marker and is ignored."""
    if len(token) != 2:
        raise ProtocolError(f"invalid pin: {token}")
    digit = token[1]
    if not ("0" <= digit <= "9"):
        raise ProtocolError(f"invalid pin: {token}")
    pin = ord(digit) - ord("0")
    if pin >= PIN_COUNT:
        raise ProtocolError(f"invalid pin: {token}")
    return pin


def parse_action(token: str) -> PinAction:
    try:
        return PinAction(token.lower())
    except ValueError:
        raise ProtocolError(f"invalid action: {token}") from None


def parse_duration(token: str) -> int:
    if not (token.isascii() and token.isdigit()):
        raise ProtocolError(f"invalid duration: {token}")
    return int(token)


def _require(tokens: tuple[str, ...], count: int, usage: str):
    if len(tokens) < count:
        raise ProtocolError(f"usage: {usage}")


def parse_command(line: str) -> Command:
    """Build a Command from one request line.

    Raises ProtocolError when a known verb is missing arguments or carries
    malformed ones. Extra trailing tokens are ignored.
    """
    tokens = tokenize(line)
    if not tokens:
        return UnknownCommand(verb="")

    verb = tokens[0]
    if verb.lower() == "set":
        _require(tokens, 3, "set <pin> <hi|low|toggle>")
        return SetCommand(pin=parse_pin(tokens[1]), action=parse_action(tokens[2]))
    if verb.lower() == "strobe":
        _require(tokens, 3, "strobe <pin> <milliseconds>")
        return StrobeCommand(pin=parse_pin(tokens[1]), duration_ms=parse_duration(tokens[2]))
    return UnknownCommand(verb=verb)


# ── Encode ────────────────────────────────────────────────────────────

def format_reply(ok: bool, message: str) -> str:
    return f"{1 if ok else 0};{message}"


def encode_reply(reply: str) -> bytes:
    return reply.encode("ascii", errors="replace") + b"\n"


def encode_request(line: str) -> bytes:
    data = line.encode("ascii", errors="replace") + b"\n"
    if len(data) > MAX_REQUEST:
        raise ProtocolError(f"request longer than {MAX_REQUEST} bytes")
    return data


@dataclass(frozen=True, slots=True)
class Reply:
    ok: bool
    message: str


def parse_reply(raw: bytes | str) -> Reply:
    """``b"1;ok\\n"`` → Reply(ok=True, message="ok")."""
    if isinstance(raw, bytes):
        raw = raw.decode("ascii", errors="replace")
    raw = raw.rstrip("\r\n")
    status, sep, message = raw.partition(";")
    if not sep or status not in ("0", "1"):
        raise ProtocolError(f"unexpected reply: {raw!r}")
    return Reply(ok=status == "1", message=message)
