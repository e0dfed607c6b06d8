"""
Thin ImageMagick wrapper: command-line builder, process driver and input sources.

Requirements:
 - ImageMagick installed and `convert`/`identify` available in PATH
   (override with MAGICK_CONVERT_COMMAND / MAGICK_IDENTIFY_COMMAND).

Input is always fed on stdin (`-`) and output read from stdout, so images never touch a
temporary file. stdout and stderr are drained together by `subprocess.run`, and only the
complete texts are handed to the parsers in `magick_ident.ident`.
"""

import math
import os
import subprocess
import sys
from collections.abc import Iterable, Iterator
from pathlib import Path
from typing import IO, Self

import httpx
from loguru import logger

from magick_ident.ident import ClassifiedError, ErrorKind, Record, classify_error, parse_metadata


DEFAULT_CONVERT_COMMAND = os.getenv("MAGICK_CONVERT_COMMAND", "convert")
DEFAULT_IDENTIFY_COMMAND = os.getenv("MAGICK_IDENTIFY_COMMAND", "identify")
DEFAULT_TIMEOUT = float(os.getenv("MAGICK_TIMEOUT", "60"))
DEFAULT_HTTP_TIMEOUT = float(os.getenv("MAGICK_HTTP_TIMEOUT", "30"))
DEFAULT_CHUNK_SIZE = int(os.getenv("MAGICK_CHUNK_SIZE", "65536"))
STDIO_TARGET = "-"

Source = bytes | IO[bytes] | Iterable[bytes]


class MagickError(RuntimeError):
    """A failed ImageMagick run, carrying the classified diagnostic."""

    def __init__(self, error: ClassifiedError) -> None:
        super().__init__(error.message)
        self.error = error

    @property
    def status(self) -> int:
        return self.error.status

    @property
    def error_kind(self) -> ErrorKind:
        return self.error.error_kind


def read_source(source: Source, chunk_size: int = DEFAULT_CHUNK_SIZE) -> bytes:
    """
    Collect an input source into bytes.

    Examples:
        >>> read_source(b"GIF89a")
        b'GIF89a'
        >>> read_source([b"GIF", b"89a"])
        b'GIF89a'

    """
    if isinstance(source, (bytes, bytearray, memoryview)):
        return bytes(source)
    read = getattr(source, "read", None)
    if callable(read):
        return b"".join(iter(lambda: read(chunk_size), b""))
    return b"".join(source)


def _stream_url(url: str, timeout: float, chunk_size: int) -> Iterator[bytes]:
    logger.info("downloading_source", url=url)
    with httpx.stream("GET", url, timeout=timeout, follow_redirects=True) as response:
        response.raise_for_status()
        yield from response.iter_bytes(chunk_size)


def open_source(
    location: str,
    *,
    timeout: float = DEFAULT_HTTP_TIMEOUT,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> Source:
    """
    Resolve a CLI input location into a source.

    `-` reads stdin, `http://`/`https://` URLs are streamed with httpx, anything else is
    read from the local filesystem.

    Examples:
        >>> open_source("-")  # doctest: +SKIP
        <_io.BufferedReader name='<stdin>'>

    """
    if location == STDIO_TARGET:
        return sys.stdin.buffer
    if location.startswith(("http://", "https://")):
        return _stream_url(location, timeout, chunk_size)
    return Path(location).read_bytes()


def _run(
    argv: list[str],
    data: bytes,
    *,
    timeout: float,
) -> subprocess.CompletedProcess[bytes]:
    """Run ImageMagick with `data` on stdin; raise MagickError when it exits non-zero."""
    logger.debug("running_imagemagick", argv=argv, input_bytes=len(data))
    try:
        proc = subprocess.run(  # noqa: S603
            argv,
            input=data,
            capture_output=True,
            check=False,
            timeout=timeout,
        )
    except FileNotFoundError:
        logger.error("imagemagick_not_found", command=argv[0])
        raise
    except subprocess.TimeoutExpired:
        logger.error("imagemagick_timeout", command=argv[0], timeout=timeout)
        raise

    stderr = proc.stderr.decode("utf-8", errors="replace")
    if proc.returncode != 0:
        error = classify_error(stderr or f"{argv[0]} exited with status {proc.returncode}")
        logger.debug(
            "imagemagick_failed",
            returncode=proc.returncode,
            error_kind=error.error_kind,
            status=error.status,
        )
        raise MagickError(error)

    if stderr.strip():
        warning = classify_error(stderr)
        logger.warning(
            "magick_warning",
            message=warning.message,
            error_kind=warning.error_kind,
            filename=warning.filename,
        )

    logger.debug("imagemagick_completed", output_bytes=len(proc.stdout))
    return proc


class ImageMagick:
    """
    Fluent builder for a `convert` invocation that reads stdin and writes stdout.

    Examples:
        >>> ImageMagick(b"...").crop("40x40+90+90").resize("200x200").format("png").command_line()
        ['convert', '-', '-crop', '40x40+90+90', '-resize', '200x200', 'png:-']

    """

    def __init__(self, source: Source) -> None:
        self.source = source
        self.output = STDIO_TARGET
        self._args: list[str] = []

    @property
    def args(self) -> list[str]:
        return list(self._args)

    def _push(self, *tokens: str) -> Self:
        self._args.extend(tokens)
        return self

    def auto_orient(self, enabled: bool = True) -> Self:  # noqa: FBT001, FBT002
        """Add `-auto-orient` unless disabled."""
        if enabled:
            self._push("-auto-orient")
        return self

    def crop(self, geometry: str) -> Self:
        """Add `-crop`; `geometry` is an Image Geometry string such as `40x40+90+90`."""
        return self._push("-crop", geometry)

    def extent(self, geometry: str) -> Self:
        return self._push("-extent", geometry)

    def define(self, setting: str) -> Self:
        """Add `-define`, e.g. `jpeg:size=200x200`."""
        return self._push("-define", setting)

    def filter(self, kind: str) -> Self:
        return self._push("-filter", kind)

    def gravity(self, kind: str) -> Self:
        """Add `-gravity` (NorthWest, North, NorthEast, West, Center, East, SouthWest, ...)."""
        return self._push("-gravity", kind)

    def interlace(self, kind: str) -> Self:
        """Add `-interlace`; `plane` produces a progressive JPEG."""
        return self._push("-interlace", kind)

    def liquid_rescale(self, geometry: str) -> Self:
        return self._push("-liquid-rescale", geometry)

    def quality(self, value: int | float | str) -> Self:
        """Add `-quality` (1-100 for JPEG, 1-10 for PNG); non-numeric values are ignored."""
        try:
            number = float(value)
        except (TypeError, ValueError):
            number = math.nan
        if not math.isfinite(number):
            logger.debug("quality_ignored", value=value)
            return self
        return self._push("-quality", str(value))

    def resize(self, geometry: str) -> Self:
        return self._push("-resize", geometry)

    def rotate(self, degrees: str) -> Self:
        """Add `-rotate`; a `<` or `>` suffix rotates only for portrait or landscape input."""
        return self._push("-rotate", str(degrees))

    def sample(self, geometry: str) -> Self:
        return self._push("-sample", geometry)

    def scale(self, geometry: str) -> Self:
        return self._push("-scale", geometry)

    def sharpen(self, radius: str) -> Self:
        """Add `-sharpen`; `radius` is `radius` or `radiusxsigma+bias`."""
        return self._push("-sharpen", radius)

    def strip(self, enabled: bool = True) -> Self:  # noqa: FBT001, FBT002
        """Add `-strip` (drop profiles and comments) unless disabled."""
        if enabled:
            self._push("-strip")
        return self

    def thumbnail(self, geometry: str) -> Self:
        return self._push("-thumbnail", geometry)

    def unsharp(self, radius: str) -> Self:
        """Add `-unsharp`; `radius` is `radiusxsigma{+amount}{+threshold}`."""
        return self._push("-unsharp", radius)

    def format(self, fmt: str) -> Self:
        """Write the output as `fmt` (see `convert -list format`) instead of the input format."""
        self.output = f"{fmt}:{STDIO_TARGET}"
        return self

    def command_line(self, command: str = DEFAULT_CONVERT_COMMAND) -> list[str]:
        return [command, STDIO_TARGET, *self._args, self.output]

    def convert(
        self,
        output: IO[bytes] | None = None,
        *,
        command: str = DEFAULT_CONVERT_COMMAND,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> bytes:
        """
        Run `convert` and return the converted image.

        Args:
            output: Optional binary file object that also receives the image
            command: convert executable to run
            timeout: Seconds before the process is killed

        Returns:
            The bytes written by convert to stdout.

        Raises:
            MagickError: convert exited non-zero; `.error` holds the classified stderr.

        """
        argv = self.command_line(command)
        proc = _run(argv, read_source(self.source), timeout=timeout)
        if output is not None:
            output.write(proc.stdout)
            output.flush()
        return proc.stdout


def identify(
    source: Source,
    *,
    command: str = DEFAULT_IDENTIFY_COMMAND,
    timeout: float = DEFAULT_TIMEOUT,
) -> Record | list[Record]:
    """
    Run `identify -verbose` and parse its report.

    Returns:
        One record for single-frame images, one record per frame otherwise.

    Raises:
        MagickError: identify exited non-zero; `.error` holds the classified stderr.

    """
    proc = _run([command, "-verbose", STDIO_TARGET], read_source(source), timeout=timeout)
    return parse_metadata(proc.stdout.decode("utf-8", errors="replace"))
