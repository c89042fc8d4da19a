from __future__ import annotations

from decimal import Decimal

import pytest

from weighsync.exceptions import ParseFailure
from weighsync.ingestion.normalize import extract_weight, parse_controller_payload, parse_scale_line
from weighsync.ingestion.scale import split_lines


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        (b'{"weight": 15.25}', Decimal("15.250")),
        (b'{"Value": "15.5 kg"}', Decimal("15.500")),
        (b'{"d": {"w": 12.1}}', Decimal("12.100")),
        (b'{"reading": 14.75, "seq": 100000}', Decimal("14.750")),
        (b"15.432", Decimal("15.432")),
        (b"WT=15.67kg", Decimal("15.670")),
    ],
)
def test_controller_payload_shapes(raw: bytes, expected: Decimal) -> None:
    assert parse_controller_payload(raw) == expected


def test_named_field_wins_over_plausible_number() -> None:
    assert extract_weight({"seq": 7, "weight": 15.2}) == 15.2


def test_nested_fields_are_scanned_after_top_level() -> None:
    assert extract_weight({"status": "ok", "d": {"Weight": 11.0}}) == 11.0


def test_plausible_fallback_excludes_out_of_range_numbers() -> None:
    assert extract_weight({"seq": 20000, "zero": 0}) is None


@pytest.mark.parametrize("raw", [b"", b"   ", b"no digits here", b'{"status": "ok"}', b"true"])
def test_controller_payload_without_weight_fails(raw: bytes) -> None:
    with pytest.raises(ParseFailure):
        parse_controller_payload(raw)


def test_scale_line_with_stable_marker_and_kg() -> None:
    line = parse_scale_line(b"ST,GS,  12.345 kg")

    assert line.value == Decimal("12.345")
    assert line.stable is True
    assert line.unit == "kg"


def test_scale_line_comma_decimal() -> None:
    assert parse_scale_line("12,345kg").value == Decimal("12.345")


def test_scale_line_grams_are_converted() -> None:
    line = parse_scale_line("W:12345 g US")

    assert line.value == Decimal("12.345")
    assert line.unit == "g"
    assert line.stable is False


def test_scale_line_unstable_word_is_not_read_as_stable() -> None:
    assert parse_scale_line("12.0 kg unstable").stable is False


def test_scale_line_without_marker_defaults_to_stable() -> None:
    line = parse_scale_line("12.5")

    assert line.stable is True
    assert line.unit == "kg"


@pytest.mark.parametrize("raw", ["", "   ", "OK kg"])
def test_malformed_scale_line_fails(raw: str) -> None:
    with pytest.raises(ParseFailure):
        parse_scale_line(raw)


def test_split_lines_keeps_partial_tail() -> None:
    lines, tail = split_lines(b"ST 12.0 kg\r\nST 12.1 kg\r\nST 12", b"\r\n")

    assert lines == [b"ST 12.0 kg", b"ST 12.1 kg"]
    assert tail == b"ST 12"


def test_split_lines_discards_runaway_tail() -> None:
    lines, tail = split_lines(b"x" * 5000, b"\r\n")

    assert lines == []
    assert tail == b""
