"""Regression tests for the verbose-report parser and the diagnostic classifier."""

from collections.abc import Iterator, Mapping
from datetime import UTC, datetime
from http import HTTPStatus
from pathlib import Path

import pytest
from loguru import logger
from pydantic import ValidationError

import magick_ident.ident as ident


FIXTURES = Path(__file__).parent / "fixtures"
JPG_REPORT = (FIXTURES / "identify-jpg.txt").read_text(encoding="utf-8")
GIF_REPORT = (FIXTURES / "identify-gif.txt").read_text(encoding="utf-8")
IDENTIFY_ERR = (FIXTURES / "identify-err.txt").read_text(encoding="utf-8")
CONVERT_ERR = (FIXTURES / "convert-err.txt").read_text(encoding="utf-8")

TMP_JPEG = "/var/folders/_n/pchsjj1d6jqdkd05yjx2tz0c0000gn/T/magick-AvR72l6Z"


@pytest.fixture
def warnings() -> Iterator[list[str]]:
    """Collect loguru WARNING messages emitted during a test."""
    messages: list[str] = []
    handler_id = logger.add(messages.append, level="WARNING", format="{message}")
    yield messages
    logger.remove(handler_id)


def test_parse_metadata_single_frame_returns_record() -> None:
    """A report with one Image line yields one mapping, not a list."""
    obj = ident.parse_metadata(JPG_REPORT)

    assert isinstance(obj, Mapping)
    assert obj["image"] == TMP_JPEG
    assert obj["baseFilename"] == "-"
    assert "JPEG" in obj["format"]
    assert obj["geometry"] == "400x300+0+0"
    assert obj["type"] == "TrueColor"
    assert obj["resolution"] == "72x72"
    assert obj["printSize"] == "5.55556x4.16667"


def test_parse_metadata_coerces_leaf_values() -> None:
    """Numbers, booleans and free text keep the type the report implies."""
    obj = ident.parse_metadata(JPG_REPORT)

    assert obj["quality"] == 92
    assert isinstance(obj["quality"], float)
    assert obj["gamma"] == pytest.approx(0.454545)
    assert obj["iterations"] == 0
    assert obj["tainted"] is False
    assert obj["artifacts"]["verbose"] is True
    assert obj["numberPixels"] == 120000
    assert obj["filesize"] == "24.1KB"
    assert obj["elapsedTime"] == "0:01.009"
    assert obj["version"].startswith("ImageMagick 6.8.9-1")


def test_parse_metadata_nests_indented_sections() -> None:
    """Lines without a value open a nested record that collects the deeper lines."""
    obj = ident.parse_metadata(JPG_REPORT)

    assert obj["channelDepth"] == {"red": "8-bit", "green": "8-bit", "blue": "8-bit"}
    stats = obj["channelStatistics"]
    assert stats["pixels"] == 120000
    assert stats["red"]["mean"] == "118.374 (0.464211)"
    assert stats["red"]["kurtosis"] == pytest.approx(-1.17413)
    assert stats["green"]["standardDeviation"] == "63.2107 (0.247885)"
    assert obj["chromaticity"]["whitePoint"] == "(0.3127,0.329)"
    # Back at the top level after the nested sections close.
    assert obj["renderingIntent"] == "Perceptual"


def test_parse_metadata_repairs_keys_with_embedded_colons() -> None:
    """`date:create: ...` becomes dateCreate holding a datetime."""
    props = ident.parse_metadata(JPG_REPORT)["properties"]

    assert isinstance(props["dateCreate"], datetime)
    assert props["dateCreate"] == datetime(2014, 7, 16, 8, 33, 52, tzinfo=UTC)
    assert isinstance(props["dateModify"], datetime)
    assert props["jpegColorspace"] == 2
    assert props["jpegSamplingFactor"] == "2x2,1x1,1x1"
    assert len(props["signature"]) == 64


def test_parse_metadata_records_are_read_only() -> None:
    """Returned records cannot be modified by the caller."""
    obj = ident.parse_metadata(JPG_REPORT)

    with pytest.raises(TypeError):
        obj["image"] = "other"  # type: ignore[index]
    with pytest.raises(TypeError):
        obj["properties"]["dateCreate"] = None  # type: ignore[index]


def test_parse_metadata_animated_gif_returns_one_record_per_frame() -> None:
    """Every Image line starts its own frame; frames are returned in order."""
    frames = ident.parse_metadata(GIF_REPORT)

    assert isinstance(frames, list)
    assert len(frames) == 3
    for frame in frames:
        assert frame["image"] == "original.gif"
        assert frame["format"] == "GIF (CompuServe graphics interchange format)"
        assert frame["colors"] == 4
        assert isinstance(frame["properties"]["dateCreate"], datetime)
    assert [frame["scene"] for frame in frames] == ["0 of 3", "1 of 3", "2 of 3"]
    assert frames[2]["geometry"] == "16x16+8+8"
    assert frames[0]["properties"]["signature"] != frames[1]["properties"]["signature"]


def test_parse_metadata_colormap_nests_entries() -> None:
    """The colormap size is dropped so its entries become children of `colormap`."""
    frame = ident.parse_metadata(GIF_REPORT)[0]

    assert frame["colormapEntries"] == 4
    assert isinstance(frame["colormap"], Mapping)
    assert frame["colormap"]["0"] == "(  0,  0,  0) #000000 black"
    assert frame["colormap"]["3"] == "(255,255,255) #FFFFFF white"
    assert frame["renderingIntent"] == "Perceptual"


def test_parse_metadata_minimal_report() -> None:
    """The smallest report maps straight onto a flat record."""
    obj = ident.parse_metadata("Image: foo.jpg\n  Format: JPEG\n  Geometry: 100x100\n")

    assert obj == {"image": "foo.jpg", "format": "JPEG", "geometry": "100x100"}


def test_parse_metadata_two_frames_are_independent() -> None:
    """Frames never share records, even when their keys overlap."""
    report = (
        "Image: a.gif\n  Scene: 0\n  Geometry: 10x10\n"
        "Image: a.gif\n  Scene: 1\n  Geometry: 20x20\n"
    )

    first, second = ident.parse_metadata(report)

    assert first == {"image": "a.gif", "scene": 0, "geometry": "10x10"}
    assert second == {"image": "a.gif", "scene": 1, "geometry": "20x20"}


def test_parse_metadata_degrades_on_empty_or_garbage_input() -> None:
    """Input without any `key: value` line yields an empty record."""
    assert ident.parse_metadata("") == {}
    assert ident.parse_metadata("no structure here\n") == {}


def test_parse_metadata_tolerates_trailing_blank_lines() -> None:
    """Blank lines after the last field are swallowed."""
    obj = ident.parse_metadata("Image: foo.png\n  Format: PNG\n\n\n\n")

    assert obj == {"image": "foo.png", "format": "PNG"}


def test_parse_metadata_ignores_text_before_first_frame() -> None:
    """Blank lines ahead of the first `Image:` line do not add a frame."""
    obj = ident.parse_metadata("\nImage: a.jpg\n  Format: JPEG\n")

    assert isinstance(obj, Mapping)
    assert obj == {"image": "a.jpg", "format": "JPEG"}

    frames = ident.parse_metadata("\n\nImage: a.gif\n  Scene: 0\nImage: a.gif\n  Scene: 1\n")

    assert isinstance(frames, list)
    assert [frame["scene"] for frame in frames] == [0, 1]


def test_parse_metadata_redeclared_key_overwrites() -> None:
    """A key repeated within one record keeps the last value."""
    obj = ident.parse_metadata("Image: foo.png\n  Format: PNG\n  Format: GIF\n")

    assert obj["format"] == "GIF"


@pytest.mark.parametrize(
    ("key", "value", "expected"),
    [
        ("quality", "0", 0.0),
        ("kurtosis", "-1.5", -1.5),
        ("gamma", "0.454545", 0.454545),
        ("gamma", "0.00001", 0.00001),
        ("gamma", "1e-7", 1e-7),
        ("gamma", "1e-05", "1e-05"),
        ("resolution", "1e+21", 1e21),
        ("tainted", "TRUE", True),
        ("tainted", "false", False),
        ("geometry", "1.50", "1.50"),
        ("geometry", "00", "00"),
        ("geometry", "12px", "12px"),
        ("geometry", "nan", "nan"),
        ("baseFilename", "-", "-"),
    ],
)
def test_coerce_value_priority(key: str, value: str, expected: object) -> None:
    """Booleans win over numbers; numbers must print back exactly as written."""
    result = ident.coerce_value(key, value)

    assert result == expected
    assert type(result) is type(expected)


def test_coerce_value_date_keys_and_absent() -> None:
    """Date keys parse to datetime, empty text is ABSENT, colormap is always ABSENT."""
    parsed = ident.coerce_value("dateCreate", "2020-01-01T00:00:00+00:00")

    assert parsed == datetime(2020, 1, 1, tzinfo=UTC)
    assert ident.coerce_value("dateCreate", "not a date at all") == "not a date at all"
    assert ident.coerce_value("properties", "") is ident.ABSENT
    assert ident.coerce_value("colormap", "256") is ident.ABSENT


def test_normalize_key_camel_cases_words() -> None:
    """Spaces and hyphens separate words; the first stays lower-case."""
    assert ident.normalize_key("Base filename") == "baseFilename"
    assert ident.normalize_key("Pixels per second") == "pixelsPerSecond"
    assert ident.normalize_key("jpeg sampling-factor") == "jpegSamplingFactor"


def test_to_builtin_produces_plain_json_types() -> None:
    """Read-only mappings and datetimes become dicts and ISO strings."""
    frames = ident.to_builtin(ident.parse_metadata(GIF_REPORT))

    assert isinstance(frames, list)
    assert type(frames[0]) is dict
    assert type(frames[0]["colormap"]) is dict
    assert frames[0]["properties"]["dateCreate"] == "2015-03-02T09:15:00+00:00"


def test_classify_error_corrupt_jpeg() -> None:
    """Corrupt data takes the first line as message and the second as description."""
    err = ident.classify_error(IDENTIFY_ERR)

    assert err.status == HTTPStatus.UNPROCESSABLE_ENTITY
    assert err.error_kind is ident.ErrorKind.CORRUPT
    assert err.message == "Premature end of JPEG file"
    assert err.description == "Corrupt JPEG data: premature end of data segment"
    assert err.filename == "/var/folders/_n/pchsjj1d6jqdkd05yjx2tz0c0000gn/T/magick-fECuVcfB"
    assert err.command == "identify"
    assert err.raw == IDENTIFY_ERR
    assert err.retryable is False


def test_classify_error_short_corrupt_sample() -> None:
    """Single-space separated two-line sample is classified the same way."""
    raw = (
        "identify: Premature end of JPEG file `/tmp/x' @ warning/jpeg.c/JPEGWarningHandler/325.\n"
        "identify: Corrupt JPEG data: premature end of data segment `/tmp/x' "
        "@ warning/jpeg.c/JPEGWarningHandler/325."
    )

    err = ident.classify_error(raw)

    assert err.error_kind == "corrupt"
    assert err.status == 422
    assert err.message == "Premature end of JPEG file"
    assert err.description == "Corrupt JPEG data: premature end of data segment"
    assert err.filename == "/tmp/x"


def test_classify_error_invalid_argument_uses_last_message() -> None:
    """Invalid arguments report the last line; description comes from the front."""
    err = ident.classify_error(CONVERT_ERR)

    assert err.status == 422
    assert err.error_kind is ident.ErrorKind.INVALID_ARGUMENT
    assert err.message == "invalid argument for option `-resize': 800+0+0"
    assert err.description == "no decode delegate for this image format"
    assert err.filename == "/var/folders/_n/pchsjj1d6jqdkd05yjx2tz0c0000gn/T/magick-mI6bV7wa"
    assert err.command == "convert"


def test_classify_error_missing_filename_is_invalid_argument() -> None:
    """An output target of `-` shares the invalid_argument class."""
    raw = "convert: missing an image filename `-' @ error/convert.c/ConvertImageCommand/3011.\n"

    err = ident.classify_error(raw)

    assert err.error_kind is ident.ErrorKind.INVALID_ARGUMENT
    assert err.message == "missing an image filename"
    assert err.description == ""
    assert err.filename == "-"


def test_classify_error_unsupported_type() -> None:
    """Raw formats that need an explicit size are unsupported."""
    raw = (
        "identify: must specify image size `/tmp/magick-XML1' "
        "@ error/raw.c/ReadRAWImage/140.\n"
    )

    err = ident.classify_error(raw)

    assert err.error_kind is ident.ErrorKind.UNSUPPORTED_TYPE
    assert err.status == 422
    assert err.message == "must specify image size"
    assert err.filename == "/tmp/magick-XML1"


def test_classify_error_corrupt_takes_precedence() -> None:
    """The keyword table is ordered: Corrupt wins over invalid argument."""
    raw = (
        "convert: invalid argument for option `-quality': x @ error/convert.c/Convert/1.\n"
        "convert: Corrupt image `/tmp/y' @ error/png.c/ReadPNGImage/3.\n"
    )

    err = ident.classify_error(raw)

    assert err.error_kind is ident.ErrorKind.CORRUPT
    assert err.message == "invalid argument for option `-quality': x"
    assert err.description == "Corrupt image"
    assert err.filename == "/tmp/y"


def test_classify_error_unescapes_quotes_and_backslashes() -> None:
    """Escaped quotes in messages and backslashes in paths are removed."""
    raw = "identify: Corrupt image can\\'t read `/tmp/my\\ file.png' @ error/png.c/Read/1.\n"

    err = ident.classify_error(raw)

    assert err.message == "Corrupt image can't read"
    assert err.filename == "/tmp/my file.png"


def test_classify_error_unrecognized_text(warnings: list[str]) -> None:
    """Arbitrary text degrades to an unclassified 500 carrying the whole input."""
    raw = "Segmentation fault (core dumped)"

    err = ident.classify_error(raw)

    assert err.error_kind is ident.ErrorKind.UNCLASSIFIED
    assert err.status == HTTPStatus.INTERNAL_SERVER_ERROR
    assert err.message == raw
    assert err.description == ""
    assert err.filename == ""
    assert err.command == ""
    assert err.retryable is True
    assert any("magick_error_pattern_not_matched" in msg for msg in warnings)


def test_classify_error_unknown_diagnostic_logs_gap(warnings: list[str]) -> None:
    """Structured but unknown diagnostics keep their first message and are logged."""
    raw = (
        "convert: unable to open image `nope.png': No such file or directory "
        "@ error/blob.c/OpenBlob/2701.\n"
    )

    err = ident.classify_error(raw)

    assert err.error_kind is ident.ErrorKind.UNCLASSIFIED
    assert err.status == 500
    assert err.message == "unable to open image `nope.png': No such file or directory"
    assert err.command == "convert"
    assert any("magick_error_unclassified" in msg for msg in warnings)
    assert not any("magick_error_pattern_not_matched" in msg for msg in warnings)


def test_classify_error_invalid_argument_without_structure_falls_back_to_raw() -> None:
    """The message is never empty, even when no diagnostic line was extracted."""
    raw = "invalid argument"

    err = ident.classify_error(raw)

    assert err.error_kind is ident.ErrorKind.INVALID_ARGUMENT
    assert err.message == raw


def test_classified_error_is_frozen() -> None:
    """Classified errors are immutable values."""
    err = ident.classify_error(IDENTIFY_ERR)

    with pytest.raises(ValidationError):
        err.status = 200  # type: ignore[misc]
