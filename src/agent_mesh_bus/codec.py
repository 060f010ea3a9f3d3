# agent-mesh-bus - Filesystem message bus for coordinating agent sessions
# Copyright (c) 2025 xnoto

"""Message codec: header/body files, filename grammar, and addressing.

A message file is UTF-8 text:

    ---
    from: research/interviewer
    to: core/core
    type: task-complete
    status: complete
    msg-id: 4f7a21
    timestamp: 2025-11-02T08:30:00
    ---

    # Markdown body

Filenames encode ordering and routing metadata so that a lexical sort of a
directory is a chronological sort:

    MMDDHHMMSS-<type>-<fromParticipant>><toParticipant>-<msgId>.md

Terminal states are marked by renaming with a ``-done``, ``-orphan`` or
``-failed`` suffix; such files are never routed again.
"""

import logging
import os
import re
import tempfile
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path

log = logging.getLogger(__name__)

SEPARATOR = "---"

KNOWN_TYPES = ("task", "task-complete", "ask", "ask-response", "update", "prompt")
# Types that must carry a msg-id so responses can be correlated
ID_REQUIRED_TYPES = ("task", "task-complete", "ask", "ask-response")
REQUIRED_FIELDS = ("from", "to", "type")
CANONICAL_ORDER = ("from", "to", "type", "status", "msg-id", "timestamp")

TERMINAL_SUFFIXES = ("-done", "-orphan", "-failed")

TIMESTAMP_FORMAT = "%m%d%H%M%S"

_NAME = r"[A-Za-z0-9_.-]+"
ADDRESS_RE = re.compile(rf"^{_NAME}(?:/{_NAME})?$")
FILENAME_RE = re.compile(r"^(?P<ts>\d{10})-(?P<head>.+)>(?P<to>.+)-(?P<msg_id>[^-]+)$")


class MessageParseError(ValueError):
    """Raised when a message file cannot be split into header and body."""


@dataclass(frozen=True)
class Address:
    """A ``(domain, participant)`` pair. ``domain`` is None when unqualified."""

    domain: str | None
    participant: str

    def __str__(self) -> str:
        if self.domain:
            return f"{self.domain}/{self.participant}"
        return self.participant


@dataclass(frozen=True)
class Owner:
    """Owner of a set of queue tiers: a whole domain, or one participant in it."""

    domain: str
    participant: str | None = None

    @property
    def key(self) -> str:
        if self.participant:
            return f"{self.domain}/{self.participant}"
        return self.domain

    @property
    def is_participant(self) -> bool:
        return self.participant is not None

    @classmethod
    def parse(cls, key: "str | Owner") -> "Owner":
        """Accept an Owner, ``"domain"`` or ``"domain/participant"``."""
        if isinstance(key, Owner):
            return key
        domain, _, participant = key.partition("/")
        return cls(domain, participant or None)

    def __str__(self) -> str:
        return self.key


@dataclass
class Message:
    sender: str
    to: str
    type: str
    status: str | None = None
    msg_id: str | None = None
    timestamp: str | None = None
    extra: dict[str, str] = field(default_factory=dict)
    body: str = ""
    path: Path | None = None
    warnings: list[str] = field(default_factory=list)

    @property
    def headers(self) -> dict[str, str]:
        """Header block as an ordered dict (canonical keys first, extras sorted)."""
        values = {
            "from": self.sender,
            "to": self.to,
            "type": self.type,
            "status": self.status,
            "msg-id": self.msg_id,
            "timestamp": self.timestamp,
        }
        headers = {k: values[k] for k in CANONICAL_ORDER if values[k] is not None}
        for key in sorted(self.extra):
            headers[key] = self.extra[key]
        return headers

    def get(self, key: str, default: str | None = None) -> str | None:
        return self.headers.get(key, default)

    @property
    def filename(self) -> str | None:
        return self.path.name if self.path else None


@dataclass(frozen=True)
class FilenameInfo:
    timestamp: str
    type: str
    sender: str
    recipient: str
    msg_id: str
    suffix: str = ""

    @property
    def is_terminal(self) -> bool:
        return bool(self.suffix)


# =============================================================================
# Addressing
# =============================================================================


def is_valid_address(value: str | None) -> bool:
    return bool(value) and ADDRESS_RE.match(value) is not None


def parse_address(value: str, default_domain: str | None = None) -> Address:
    """Split ``domain/participant`` or a bare identifier into an Address.

    A bare identifier is a participant in ``default_domain``; callers that need
    domain lookup (a bare domain name) resolve that themselves.
    """
    value = (value or "").strip()
    if not is_valid_address(value):
        raise ValueError(f"Invalid address: {value!r}")
    if "/" in value:
        domain, participant = value.split("/", 1)
        return Address(domain, participant)
    return Address(default_domain, value)


def participant_name(value: str) -> str:
    """Last path segment of an address ("research/interviewer" -> "interviewer")."""
    return value.rsplit("/", 1)[-1] if value else ""


# =============================================================================
# Filenames
# =============================================================================


def format_timestamp(when: datetime) -> str:
    return when.strftime(TIMESTAMP_FORMAT)


def format_filename(info: FilenameInfo) -> str:
    return (
        f"{info.timestamp}-{info.type}-{info.sender}>{info.recipient}-{info.msg_id}"
        f"{info.suffix}.md"
    )


def _split_type(head: str) -> tuple[str, str]:
    # Longest known type first so "task-complete-a" is not read as type "task"
    for known in sorted(KNOWN_TYPES, key=len, reverse=True):
        if head.startswith(known + "-") and len(head) > len(known) + 1:
            return known, head[len(known) + 1 :]
    msg_type, _, sender = head.partition("-")
    if not sender:
        raise ValueError(f"Missing sender in filename segment: {head!r}")
    return msg_type, sender


def parse_filename(name: str) -> FilenameInfo:
    """Parse a message filename. Raises ValueError if it does not match the grammar."""
    base = Path(name).name
    if not base.endswith(".md"):
        raise ValueError(f"Not a message file: {base}")
    stem = base[: -len(".md")]

    suffix = ""
    for terminal in TERMINAL_SUFFIXES:
        if stem.endswith(terminal):
            suffix = terminal
            stem = stem[: -len(terminal)]
            break

    match = FILENAME_RE.match(stem)
    if not match:
        raise ValueError(f"Filename does not match message grammar: {base}")

    msg_type, sender = _split_type(match.group("head"))
    return FilenameInfo(
        timestamp=match.group("ts"),
        type=msg_type,
        sender=sender,
        recipient=match.group("to"),
        msg_id=match.group("msg_id"),
        suffix=suffix,
    )


def is_terminal_filename(name: str) -> bool:
    stem = Path(name).name.removesuffix(".md")
    return stem.endswith(TERMINAL_SUFFIXES)


def timestamp_from_filename(name: str, now: datetime | None = None) -> datetime:
    """Recover the creation instant from a filename.

    Filenames carry no year. The current year is assumed unless that places the
    instant more than a day in the future, in which case the message is taken
    to be from the previous year (December messages read in January). A message
    genuinely written more than a day "ahead" of the reader's clock is therefore
    misdated by a year; that is a known limitation of the format.
    """
    info = parse_filename(name)
    now = now or datetime.now()
    ts = info.timestamp
    parts = [int(ts[i : i + 2]) for i in range(0, 10, 2)]

    def at(year: int) -> datetime:
        month, day, hour, minute, second = parts
        return datetime(year, month, day, hour, minute, second)

    def latest_valid(year: int) -> datetime:
        # Feb 29 only exists in leap years; walk back to the most recent one
        for candidate_year in range(year, year - 8, -1):
            try:
                return at(candidate_year)
            except ValueError:
                continue
        raise ValueError(f"Invalid timestamp in filename: {ts}")

    at(2000)  # leap year: rejects month 13, day 32 and friends up front
    candidate = latest_valid(now.year)
    if candidate - now > timedelta(days=1):
        candidate = latest_valid(candidate.year - 1)
    return candidate


def new_msg_id() -> str:
    return uuid.uuid4().hex[:6]


def message_filename(message: Message, when: datetime | None = None) -> str:
    when = when or datetime.now()
    return format_filename(
        FilenameInfo(
            timestamp=format_timestamp(when),
            type=message.type,
            sender=participant_name(message.sender),
            recipient=participant_name(message.to),
            msg_id=message.msg_id or new_msg_id(),
        )
    )


def mark_terminal(path: Path, suffix: str = "-done") -> Path:
    """Rename a message file with a terminal suffix. Returns the new path."""
    if suffix not in TERMINAL_SUFFIXES:
        raise ValueError(f"Unknown terminal suffix: {suffix}")
    target = path.with_name(path.name.removesuffix(".md") + suffix + ".md")
    os.replace(path, target)
    return target


# =============================================================================
# Encode / decode
# =============================================================================


def validate_header(headers: dict[str, str]) -> list[str]:
    """Schema-only validation. Returns a list of warnings (empty when valid)."""
    warnings = []
    for required in REQUIRED_FIELDS:
        if not headers.get(required):
            warnings.append(f"Missing required field: {required}")

    msg_type = headers.get("type")
    if msg_type and msg_type not in KNOWN_TYPES:
        warnings.append(f"Unknown type: {msg_type}. Known types: {', '.join(KNOWN_TYPES)}")
    if msg_type in ID_REQUIRED_TYPES and not headers.get("msg-id"):
        warnings.append(f"Missing msg-id for {msg_type} message")

    to = headers.get("to")
    if to and not is_valid_address(to):
        warnings.append(f"Invalid 'to' address: {to}")
    sender = headers.get("from")
    if sender and not is_valid_address(sender):
        warnings.append(f"Invalid 'from' address: {sender}")
    return warnings


def encode(message: Message) -> bytes:
    lines = [SEPARATOR]
    lines.extend(f"{key}: {value}" for key, value in message.headers.items())
    lines.append(SEPARATOR)
    body = message.body
    if body and not body.endswith("\n"):
        body += "\n"
    return ("\n".join(lines) + "\n\n" + body).encode("utf-8")


def decode(data: bytes | str, path: Path | None = None) -> Message:
    """Parse a message. Missing separators raise MessageParseError.

    Header validation problems are logged and kept on ``message.warnings``; they
    never prevent the message from being returned.
    """
    text = data.decode("utf-8") if isinstance(data, bytes) else data
    lines = text.split("\n")

    start = 0
    while start < len(lines) and not lines[start].strip():
        start += 1
    if start >= len(lines) or lines[start].strip() != SEPARATOR:
        raise MessageParseError(f"Missing opening separator: {path or '<message>'}")
    try:
        end = next(i for i in range(start + 1, len(lines)) if lines[i].strip() == SEPARATOR)
    except StopIteration:
        raise MessageParseError(f"Missing closing separator: {path or '<message>'}") from None

    headers: dict[str, str] = {}
    for line in lines[start + 1 : end]:
        key, sep, value = line.partition(":")
        if sep and key.strip():
            headers[key.strip()] = value.strip()

    body_lines = lines[end + 1 :]
    if body_lines and not body_lines[0].strip():
        body_lines = body_lines[1:]

    extra = {k: v for k, v in headers.items() if k not in CANONICAL_ORDER}
    message = Message(
        sender=headers.get("from", ""),
        to=headers.get("to", ""),
        type=headers.get("type", ""),
        status=headers.get("status"),
        msg_id=headers.get("msg-id"),
        timestamp=headers.get("timestamp"),
        extra=extra,
        body="\n".join(body_lines),
        path=Path(path) if path else None,
    )
    message.warnings = validate_header(headers)
    if message.warnings:
        log.warning(f"Header validation for {path or '<message>'}: {'; '.join(message.warnings)}")
    return message


def read_message(path: Path) -> Message:
    return decode(Path(path).read_bytes(), path=Path(path))


def build_message(
    sender: str,
    to: str,
    msg_type: str,
    body: str,
    status: str | None = None,
    msg_id: str | None = None,
    **extra: str,
) -> Message:
    return Message(
        sender=sender,
        to=to,
        type=msg_type,
        status=status,
        msg_id=msg_id or new_msg_id(),
        timestamp=datetime.now().isoformat(timespec="seconds"),
        extra={k.replace("_", "-"): str(v) for k, v in extra.items()},
        body=body,
    )


def write_message(directory: Path, message: Message, filename: str | None = None) -> Path:
    """Atomically write ``message`` into ``directory`` (temp file + rename)."""
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    target = directory / (filename or message_filename(message))
    fd, tmp = tempfile.mkstemp(dir=directory, prefix=".tmp-", suffix=".part")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(encode(message))
        os.replace(tmp, target)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise
    message.path = target
    return target
