"""
Parsers for the human-oriented text ImageMagick writes.

Two pure transforms live here:
 - `parse_metadata` turns the indented report of `identify -verbose` into typed records,
   one per frame.
 - `classify_error` reduces the prose ImageMagick writes to stderr into a small, stable
   taxonomy that callers can branch on.

Neither function performs I/O or raises on bad input.
"""

import math
import re
from collections.abc import Mapping
from datetime import datetime
from decimal import Decimal
from enum import StrEnum
from http import HTTPStatus
from types import MappingProxyType
from typing import Any, Final, TypeAlias

from dateutil import parser as dtparser
from loguru import logger
from pydantic import BaseModel, ConfigDict


INDENT_UNIT: Final = "  "
IDENTITY_FIELD: Final = "Image"
COLORMAP_KEY: Final = "colormap"

RE_FRAME = re.compile(rf"^(?={IDENTITY_FIELD}:)", re.MULTILINE)
RE_IDENT = re.compile(r"((?: {2})*)([^:]+): *([^\n]*)\n*")
RE_FIX_KEY = re.compile(r"^(\S+): ")
RE_CAMEL = re.compile(r"[ -](\w)", re.ASCII)
RE_ERROR = re.compile(
    r"(identify|convert|mogrify|composite|montage|magick): *([^@]+?)(?:`([^']+)')? @ (.+?)$",
    re.MULTILINE,
)

# Magnitudes outside [1e-6, 1e21) are written in exponent notation, e.g. `1e-7`, `1e+21`.
_MIN_PLAIN_MAGNITUDE = 1e-6
_MAX_PLAIN_MAGNITUDE = 1e21


class Absent:
    """Marker for a field that introduces a nested record instead of a leaf value."""

    def __repr__(self) -> str:
        return "ABSENT"

    def __bool__(self) -> bool:
        return False


ABSENT: Final = Absent()

Record: TypeAlias = Mapping[str, "FieldValue"]
FieldValue: TypeAlias = str | float | bool | datetime | Record


def normalize_key(key: str) -> str:
    """
    Lower-case a report key and join its words camelCase.

    Examples:
        >>> normalize_key("Base filename")
        'baseFilename'
        >>> normalize_key("jpeg sampling-factor")
        'jpegSamplingFactor'

    """
    return RE_CAMEL.sub(lambda md: md.group(1).upper(), key.lower())


def _format_number(number: float) -> str:
    """
    Render a float with its shortest round-trip digits, the way the report prints numbers.

    Examples:
        >>> _format_number(92.0), _format_number(0.00001), _format_number(1e-7)
        ('92', '0.00001', '1e-7')

    """
    magnitude = abs(number)
    if magnitude == 0 or _MIN_PLAIN_MAGNITUDE <= magnitude < _MAX_PLAIN_MAGNITUDE:
        if number.is_integer():
            return str(int(number))
        return format(Decimal(repr(number)), "f")
    mantissa, exponent = repr(number).split("e")
    return f"{mantissa}e{int(exponent):+d}"


def _parse_number(value: str) -> float | None:
    try:
        number = float(value)
    except ValueError:
        return None
    if not math.isfinite(number) or _format_number(number) != value:
        return None
    return number


def _parse_date(value: str) -> datetime | None:
    try:
        return dtparser.parse(value)
    except (ValueError, OverflowError):
        return None


def coerce_value(key: str, value: str) -> "FieldValue | Absent":
    """
    Turn the text of a report line into a typed value.

    Rules are tried in order and the first one that applies wins:
    date keys, booleans, numbers that print back identically, empty text (ABSENT),
    then the raw string. The `colormap` key is always ABSENT, because the report puts
    the size of the map on that line and the entries underneath it.

    Args:
        key: Normalized (camelCase) key
        value: Raw value text, without the key or separator

    Returns:
        A leaf value, or ABSENT when the line opens a nested record.

    Examples:
        >>> coerce_value("quality", "92")
        92.0
        >>> coerce_value("tainted", "False")
        False
        >>> coerce_value("channelDepth", "")
        ABSENT
        >>> coerce_value("colormap", "256")
        ABSENT

    """
    if key == COLORMAP_KEY:
        return ABSENT

    if key.startswith("date") and (parsed := _parse_date(value)) is not None:
        return parsed

    lowered = value.lower()
    if lowered == "true":
        return True
    if lowered == "false":
        return False

    if (number := _parse_number(value)) is not None:
        return number

    if not value:
        return ABSENT

    return value


def _freeze(record: dict[str, Any]) -> Record:
    return MappingProxyType(
        {
            key: _freeze(value) if isinstance(value, dict) else value
            for key, value in record.items()
        },
    )


def _parse_frame(segment: str) -> Record:
    """Build the record tree for one `Image:` segment."""
    # The identity line is not indented; pad it so it sits at the same depth as its siblings.
    text = INDENT_UNIT + segment

    root: dict[str, Any] = {}
    current = root
    stack: list[dict[str, Any]] = [root]
    pos = 0

    while (md := RE_IDENT.match(text, pos)) is not None:
        depth = len(md.group(1)) // len(INDENT_UNIT)
        key = md.group(2)
        val = md.group(3)

        # Dates and other keys that contain a colon, e.g. `date:create: 2014-...`.
        if fix := RE_FIX_KEY.match(val):
            word = fix.group(1)
            key = f"{key} {word}"
            val = val[len(word) + 2 :]

        key = normalize_key(key)
        value = coerce_value(key, val)

        while depth < len(stack):
            current = stack.pop()

        if value is ABSENT:
            stack.append(current)
            child: dict[str, Any] = {}
            current[key] = child
            current = child
        else:
            current[key] = value

        pos = md.end()

    return _freeze(root)


def split_frames(text: str) -> list[str]:
    """
    Split a verbose report into one segment per `Image:` line.

    Examples:
        >>> split_frames("Image: a.gif\\n  Scene: 0\\nImage: a.gif\\n  Scene: 1\\n")
        ['Image: a.gif\\n  Scene: 0\\n', 'Image: a.gif\\n  Scene: 1\\n']
        >>> split_frames("\\nImage: a.jpg\\n")
        ['Image: a.jpg\\n']
        >>> split_frames("")
        ['']

    """
    segments = RE_FRAME.split(text)
    # Anything before the first `Image:` line (blank lines, a banner) is not a frame.
    if len(segments) > 1 and not segments[0].startswith(f"{IDENTITY_FIELD}:"):
        segments = segments[1:]
    return segments


def parse_metadata(text: str) -> Record | list[Record]:
    """
    Parse the output of `identify -verbose` into typed records.

    The report is split into frames at each top-level `Image:` line. Every frame becomes a
    read-only mapping whose keys are camelCased report keys (`Base filename` ->
    `baseFilename`) and whose values are `str`, `float`, `bool`, `datetime` or a nested
    mapping for indented sections.

    Args:
        text: Complete stdout of the identify command

    Returns:
        The single record when the report describes one frame, otherwise a list with one
        record per frame in report order.

    Examples:
        >>> dict(parse_metadata("Image: foo.jpg\\n  Format: JPEG\\n  Quality: 92\\n"))
        {'image': 'foo.jpg', 'format': 'JPEG', 'quality': 92.0}

    """
    frames = [_parse_frame(segment) for segment in split_frames(text)]
    logger.debug("metadata_parsed", frames=len(frames))
    if len(frames) == 1:
        return frames[0]
    return frames


def to_builtin(value: Any) -> Any:  # noqa: ANN401
    """
    Convert a parse result into plain dicts/lists with ISO-8601 dates, e.g. for JSON output.

    Examples:
        >>> report = "Image: a.png\\n  Properties:\\n    date:create: 2020-01-01T00:00:00+00:00\\n"
        >>> to_builtin(parse_metadata(report))
        {'image': 'a.png', 'properties': {'dateCreate': '2020-01-01T00:00:00+00:00'}}

    """
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (dict, MappingProxyType)):
        return {key: to_builtin(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_builtin(item) for item in value]
    return value


class ErrorKind(StrEnum):
    """Machine-checkable classes of ImageMagick failures."""

    CORRUPT = "corrupt"
    UNSUPPORTED_TYPE = "unsupported_type"
    INVALID_ARGUMENT = "invalid_argument"
    UNCLASSIFIED = "unclassified"


ERROR_STATUS: Final[dict[ErrorKind, HTTPStatus]] = {
    ErrorKind.CORRUPT: HTTPStatus.UNPROCESSABLE_ENTITY,
    ErrorKind.UNSUPPORTED_TYPE: HTTPStatus.UNPROCESSABLE_ENTITY,
    ErrorKind.INVALID_ARGUMENT: HTTPStatus.UNPROCESSABLE_ENTITY,
    ErrorKind.UNCLASSIFIED: HTTPStatus.INTERNAL_SERVER_ERROR,
}

# Checked in order against the raw text; the first hit decides the kind.
ERROR_KEYWORDS: Final[tuple[tuple[ErrorKind, tuple[str, ...]], ...]] = (
    # Truncated or otherwise broken image data.
    (ErrorKind.CORRUPT, ("Corrupt",)),
    # Raw formats (e.g. an XML document read as "raw image") need an explicit size.
    (ErrorKind.UNSUPPORTED_TYPE, ("must specify image size",)),
    # Unreadable input, an output target of `-`, or a rejected option value.
    (
        ErrorKind.INVALID_ARGUMENT,
        (
            "no decode delegate for this image format",
            "missing an image filename",
            "invalid argument",
        ),
    ),
)


class ClassifiedError(BaseModel):
    """Structured view of an ImageMagick diagnostic."""

    model_config = ConfigDict(frozen=True)

    message: str
    description: str = ""
    status: int
    error_kind: ErrorKind
    filename: str = ""
    command: str = ""
    raw: str

    @property
    def retryable(self) -> bool:
        """Only unclassified failures may be worth another attempt; 422 kinds never are."""
        return self.error_kind is ErrorKind.UNCLASSIFIED


def _extract_diagnostics(raw: str) -> tuple[str | None, str | None, list[str]]:
    """Collect (command, quoted path, messages) from every `<command>: <message> @ <where>` line."""
    command: str | None = None
    filename: str | None = None
    messages: list[str] = []

    pos = 0
    while (md := RE_ERROR.search(raw, pos)) is not None:
        command = md.group(1) or command
        filename = md.group(3) or filename
        messages.append(md.group(2).strip().replace("\\'", "'"))
        pos = md.end()

    return command, filename, messages


def _match_kind(raw: str) -> ErrorKind:
    for kind, keywords in ERROR_KEYWORDS:
        if any(keyword in raw for keyword in keywords):
            return kind
    return ErrorKind.UNCLASSIFIED


def classify_error(text: str) -> ClassifiedError:
    """
    Classify the stderr of a failed `identify`/`convert` run.

    Example input:

        identify: Premature end of JPEG file `/tmp/magick-fECuVcfB' @ warning/jpeg.c/JPEGWarningHandler/325.
        identify: Corrupt JPEG data: premature end of data segment `/tmp/magick-fECuVcfB' @ warning/jpeg.c/JPEGWarningHandler/325.

    becomes a `corrupt` error (status 422) with message "Premature end of JPEG file", the
    second line as description and `/tmp/magick-fECuVcfB` as filename.

    Args:
        text: Diagnostic text as written by ImageMagick

    Returns:
        ClassifiedError. Text without any recognizable diagnostic becomes an `unclassified`
        error (status 500) whose message is the whole input.

    """
    command, filename, messages = _extract_diagnostics(text)
    kind = _match_kind(text)

    message: str | None
    description: str | None = None
    if kind is ErrorKind.INVALID_ARGUMENT:
        # The most specific line for these failures is the last one written.
        message = messages.pop() if messages else None
        description = messages.pop(0) if messages else None
    elif kind is ErrorKind.UNCLASSIFIED:
        logger.warning("magick_error_unclassified", raw=text, messages=messages)
        if not messages:
            logger.warning("magick_error_pattern_not_matched")
        message = messages.pop(0) if messages else None
    else:
        message = messages.pop(0) if messages else None
        description = messages.pop(0) if messages else None

    return ClassifiedError(
        message=message or text,
        description=description or "",
        status=int(ERROR_STATUS[kind]),
        error_kind=kind,
        filename=(filename or "").strip().replace("\\", ""),
        command=command or "",
        raw=text,
    )
