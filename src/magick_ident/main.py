#!/usr/bin/env python3
"""
magick-ident: CLI to describe images and classify failures with ImageMagick.

Runs `identify -verbose` or `convert` on a file, URL or stdin and prints typed JSON
instead of the free-form text ImageMagick writes. Saved reports and stderr captures can be
parsed offline with the `parse` and `classify` commands.

Requirements:
 - ImageMagick installed and available in PATH (only for `identify` and `convert`).

"""
# ruff: noqa: PLR0913

import json
import sys
from datetime import UTC, datetime
from pathlib import Path
from typing import Annotated, Any, Literal

import httpx
from cyclopts import App, Parameter
from loguru import logger

from magick_ident.ident import classify_error, parse_metadata, to_builtin
from magick_ident.magick import (
    DEFAULT_CONVERT_COMMAND,
    DEFAULT_HTTP_TIMEOUT,
    DEFAULT_IDENTIFY_COMMAND,
    DEFAULT_TIMEOUT,
    STDIO_TARGET,
    ImageMagick,
    MagickError,
    identify,
    open_source,
)


LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL", "OFF"]

# Cyclopts app
__version__ = "0.1.0"
app = App(
    name="magick-ident",
    version=__version__,
)


def setup_logging(
    file_log_level: LogLevel = "OFF",
    console_log_level: LogLevel = "WARNING",
    log_folder: Path = Path("logs"),
) -> None:
    """
    Configure Loguru for both console and file logging.

    Console logs go to stderr so JSON on stdout stays clean.

    Args:
        file_log_level: Log level for file (use 'OFF' to disable)
        console_log_level: Log level for console (use 'OFF' to disable)
        log_folder: Directory where log files are stored

    """
    # Remove default handler
    logger.remove()

    if file_log_level != "OFF":
        log_folder.mkdir(parents=True, exist_ok=True)
        log_file = log_folder / Path(
            datetime.now(tz=UTC).strftime("%Y%m%d%H%M%S-magick_ident.log"),
        )
        logger.add(
            log_file,
            level=file_log_level,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{level: <8} | "
                "{name:<8}:{function:<25}:{line:>4} | "
                "{message:<40} | "
                "{extra}"
            ),
            rotation="500 MB",
            retention="10 days",
            compression="zip",
        )

    if console_log_level != "OFF":
        logger.add(
            sys.stderr,
            level=console_log_level,
            colorize=True,
            format=(
                "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
                "<level>{level: <7}</level> | "
                "<level>{message:<40.50}</level> | "
                "<yellow>{extra}</yellow>"
            ),
        )


def _read_text(location: Path) -> str:
    if str(location) == STDIO_TARGET:
        return sys.stdin.read()
    try:
        return location.read_text(encoding="utf-8")
    except OSError as exc:
        logger.error("input_read_failed", file=str(location), error=str(exc))
        raise SystemExit(1) from exc


def _emit_json(payload: Any, indent: int | None) -> None:  # noqa: ANN401
    sys.stdout.write(json.dumps(payload, indent=indent, ensure_ascii=False))
    sys.stdout.write("\n")


def _fail(exc: MagickError) -> SystemExit:
    logger.error(
        "magick_command_failed",
        error_kind=exc.error_kind,
        status=exc.status,
        message=exc.error.message,
        filename=exc.error.filename,
        command=exc.error.command,
    )
    return SystemExit(1)


LogFolderOption = Annotated[
    Path,
    Parameter(name=("--log-folder",), help="Folder where log files are stored"),
]
FileLogOption = Annotated[
    LogLevel,
    Parameter(name="--file-log-level", help="Log level for file (use 'OFF' to disable)"),
]
ConsoleLogOption = Annotated[
    LogLevel,
    Parameter(name="--console-log-level", help="Log level for console (use 'OFF' to disable)"),
]
IndentOption = Annotated[
    int | None,
    Parameter(name=("--json-indent",), help="Indentation for JSON output (omit for compact)"),
]


@app.command(name="identify")
def identify_command(
    source: Annotated[
        str,
        Parameter(help="Image path, http(s) URL, or '-' for stdin"),
    ],
    *,
    command: Annotated[
        str,
        Parameter(name=("--command",), help="identify executable"),
    ] = DEFAULT_IDENTIFY_COMMAND,
    timeout: Annotated[
        float,
        Parameter(name=("--timeout",), help="Seconds before the process is killed"),
    ] = DEFAULT_TIMEOUT,
    http_timeout: Annotated[
        float,
        Parameter(name=("--http-timeout",), help="Seconds to wait when downloading a URL"),
    ] = DEFAULT_HTTP_TIMEOUT,
    json_indent: IndentOption = 2,
    file_log_level: FileLogOption = "OFF",
    console_log_level: ConsoleLogOption = "WARNING",
    log_folder: LogFolderOption = Path("logs"),
) -> None:
    """
    Describe an image with `identify -verbose` and print the report as JSON.

    Multi-frame images (e.g. animated GIFs) print a list with one object per frame.

    Examples:
        magick-ident identify ./photo.jpg
        curl -s https://example.com/a.gif | magick-ident identify -

    """
    setup_logging(file_log_level, console_log_level, log_folder)
    with logger.contextualize(source=source):
        logger.info("identifying_image", command=command)
        try:
            result = identify(
                open_source(source, timeout=http_timeout),
                command=command,
                timeout=timeout,
            )
        except MagickError as exc:
            raise _fail(exc) from exc
        except FileNotFoundError as exc:
            logger.error("input_or_command_not_found", error=str(exc))
            raise SystemExit(1) from exc
        except httpx.HTTPError as exc:
            logger.error("source_download_failed", error=str(exc))
            raise SystemExit(1) from exc

    _emit_json(to_builtin(result), json_indent)


@app.command(name="convert")
def convert_command(
    source: Annotated[
        str,
        Parameter(help="Image path, http(s) URL, or '-' for stdin"),
    ],
    output: Annotated[
        Path | None,
        Parameter(help="Destination file; stdout when omitted"),
    ] = None,
    *,
    resize: Annotated[str | None, Parameter(name=("--resize",), help="Resize geometry")] = None,
    crop: Annotated[str | None, Parameter(name=("--crop",), help="Crop geometry")] = None,
    thumbnail: Annotated[
        str | None,
        Parameter(name=("--thumbnail",), help="Thumbnail geometry"),
    ] = None,
    gravity: Annotated[str | None, Parameter(name=("--gravity",), help="Gravity")] = None,
    extent: Annotated[str | None, Parameter(name=("--extent",), help="Extent geometry")] = None,
    quality: Annotated[int | None, Parameter(name=("--quality",), help="Quality")] = None,
    rotate: Annotated[str | None, Parameter(name=("--rotate",), help="Rotation")] = None,
    strip: Annotated[
        bool,
        Parameter(name=("--strip",), help="Strip profiles and comments"),
    ] = False,
    auto_orient: Annotated[
        bool,
        Parameter(name=("--auto-orient",), help="Rotate according to EXIF orientation"),
    ] = False,
    output_format: Annotated[
        str | None,
        Parameter(name=("--format",), help="Output format, e.g. png or jpg"),
    ] = None,
    command: Annotated[
        str,
        Parameter(name=("--command",), help="convert executable"),
    ] = DEFAULT_CONVERT_COMMAND,
    timeout: Annotated[
        float,
        Parameter(name=("--timeout",), help="Seconds before the process is killed"),
    ] = DEFAULT_TIMEOUT,
    file_log_level: FileLogOption = "OFF",
    console_log_level: ConsoleLogOption = "WARNING",
    log_folder: LogFolderOption = Path("logs"),
) -> None:
    """
    Transform an image with `convert`, reading it from a file, URL or stdin.

    Operations are applied in the order auto-orient, crop, resize, thumbnail, gravity,
    extent, rotate, strip, quality.

    Examples:
        magick-ident convert ./photo.jpg ./thumb.png --thumbnail 200x200 --format png
        magick-ident convert https://example.com/a.jpg --crop 40x40+90+90 > crop.jpg

    """
    setup_logging(file_log_level, console_log_level, log_folder)
    with logger.contextualize(source=source):
        try:
            im = ImageMagick(open_source(source)).auto_orient(auto_orient)
            if crop:
                im.crop(crop)
            if resize:
                im.resize(resize)
            if thumbnail:
                im.thumbnail(thumbnail)
            if gravity:
                im.gravity(gravity)
            if extent:
                im.extent(extent)
            if rotate:
                im.rotate(rotate)
            im.strip(strip)
            if quality is not None:
                im.quality(quality)
            if output_format:
                im.format(output_format)

            logger.info("converting_image", args=im.args, output=str(output or STDIO_TARGET))
            if output is None:
                im.convert(sys.stdout.buffer, command=command, timeout=timeout)
            else:
                with output.open("wb") as handle:
                    im.convert(handle, command=command, timeout=timeout)
        except MagickError as exc:
            raise _fail(exc) from exc
        except FileNotFoundError as exc:
            logger.error("input_or_command_not_found", error=str(exc))
            raise SystemExit(1) from exc
        except httpx.HTTPError as exc:
            logger.error("source_download_failed", error=str(exc))
            raise SystemExit(1) from exc

    logger.info("conversion_completed", output=str(output or STDIO_TARGET))


@app.command(name="parse")
def parse_command(
    report: Annotated[
        Path,
        Parameter(help="Saved `identify -verbose` output, or '-' for stdin"),
    ],
    *,
    json_indent: IndentOption = 2,
    console_log_level: ConsoleLogOption = "WARNING",
) -> None:
    """Parse a saved `identify -verbose` report and print it as JSON."""
    setup_logging("OFF", console_log_level)
    result = parse_metadata(_read_text(report))
    _emit_json(to_builtin(result), json_indent)


@app.command(name="classify")
def classify_command(
    diagnostics: Annotated[
        Path,
        Parameter(help="Saved ImageMagick stderr, or '-' for stdin"),
    ],
    *,
    json_indent: IndentOption = 2,
    console_log_level: ConsoleLogOption = "WARNING",
) -> None:
    """
    Classify saved ImageMagick diagnostics and print the result as JSON.

    The `error_kind` field is one of corrupt, unsupported_type, invalid_argument or
    unclassified; `status` is 422 for the first three and 500 otherwise.

    """
    setup_logging("OFF", console_log_level)
    error = classify_error(_read_text(diagnostics))
    _emit_json(error.model_dump(mode="json"), json_indent)


if __name__ == "__main__":
    app()
