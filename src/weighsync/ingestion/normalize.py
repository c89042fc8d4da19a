"""Normalization helpers.

Turns raw transport payloads into weight values. Both parsers raise
:class:`~weighsync.exceptions.ParseFailure` on input they cannot use; the
ingestors catch it, log at DEBUG and drop the payload.
"""

from __future__ import annotations

import json
import math
import re
from collections.abc import Mapping
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from weighsync.exceptions import ParseFailure
from weighsync.models._base import to_kg

# Scanned in order at the top level, then again under ``d``.
CONTROLLER_WEIGHT_FIELDS: tuple[str, ...] = (
    "weight",
    "Weight",
    "WEIGHT",
    "value",
    "Value",
    "VALUE",
    "data",
    "Data",
    "d",
    "w",
)

# Exclusive bounds for the "any plausible number" fallback.
PLAUSIBLE_MIN_KG = 0.0
PLAUSIBLE_MAX_KG = 10000.0

_LEADING_NUMBER = re.compile(r"^\s*([-+]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][-+]?\d+)?)")
_ANY_NUMBER = re.compile(r"(-?\d+(?:\.\d+)?)")

_SCALE_NUMBER = re.compile(r"(-?\d+(?:[.,]\d+)?)")
_SCALE_UNSTABLE = re.compile(r"(?<![A-Za-z])(?:unstable|US|U)(?![A-Za-z])", re.IGNORECASE)
_SCALE_STABLE = re.compile(r"(?<![A-Za-z])(?:stable|ST|OK|S)(?![A-Za-z])", re.IGNORECASE)
_SCALE_KG = re.compile(r"(?<![A-Za-z])kg(?![A-Za-z])", re.IGNORECASE)
_SCALE_G = re.compile(r"(?<![A-Za-z])g(?![A-Za-z])", re.IGNORECASE)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def _number_from(value: Any) -> float | None:
    """Numeric value of a field: numbers as-is, strings by leading number."""
    if _is_number(value):
        return float(value)
    if isinstance(value, str):
        match = _LEADING_NUMBER.match(value)
        if match:
            parsed = float(match.group(1))
            return parsed if math.isfinite(parsed) else None
    return None


def _scan_fields(payload: Mapping[str, Any]) -> float | None:
    for field_name in CONTROLLER_WEIGHT_FIELDS:
        if field_name in payload:
            found = _number_from(payload[field_name])
            if found is not None:
                return found
    return None


def extract_weight(payload: Any) -> float | None:
    """Find a weight in a decoded controller payload.

    Order: a bare number; the named fields; the same fields one level
    under ``d``; the first top-level number in ``(0, 10000)``.
    """
    if _is_number(payload):
        return float(payload)
    if not isinstance(payload, Mapping):
        return None

    found = _scan_fields(payload)
    if found is not None:
        return found

    nested = payload.get("d")
    if isinstance(nested, Mapping):
        found = _scan_fields(nested)
        if found is not None:
            return found

    for value in payload.values():
        if _is_number(value) and PLAUSIBLE_MIN_KG < value < PLAUSIBLE_MAX_KG:
            return float(value)
    return None


def decode_controller_payload(raw: bytes | str) -> Any:
    """Decode an MQTT payload: JSON when possible, else ``{"weight": n}``."""
    text = raw.decode("utf-8", errors="replace") if isinstance(raw, (bytes, bytearray)) else str(raw)
    text = text.strip()
    if not text:
        raise ParseFailure("empty controller payload")
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        match = _ANY_NUMBER.search(text)
        if match:
            return {"weight": float(match.group(1))}
        raise ParseFailure(f"controller payload has no number: {text[:64]!r}") from None


def parse_controller_payload(raw: bytes | str | Mapping[str, Any] | float) -> Decimal:
    """Weight in kg from a controller message, or :class:`ParseFailure`."""
    payload = decode_controller_payload(raw) if isinstance(raw, (bytes, bytearray, str)) else raw
    weight = extract_weight(payload)
    if weight is None:
        raise ParseFailure(f"no weight field in controller payload: {payload!r:.128}")
    try:
        return to_kg(weight)
    except ValueError as exc:
        raise ParseFailure(str(exc)) from exc


@dataclass(frozen=True)
class ScaleLine:
    """A parsed scale line, already converted to kilograms."""

    value: Decimal
    stable: bool
    unit: str


def parse_scale_line(line: bytes | str) -> ScaleLine:
    """Parse one line from the scale.

    Accepts shapes such as ``"ST,GS,  12.345 kg"``, ``"12,345kg"``,
    ``"W:12345 g US"``. The first numeric token is the weight (decimal
    comma accepted). ``g`` values are divided by 1000. Unstable markers
    win over stable ones; with neither the reading counts as stable.
    """
    text = line.decode("ascii", errors="replace") if isinstance(line, (bytes, bytearray)) else str(line)
    trimmed = text.strip()
    if not trimmed:
        raise ParseFailure("empty scale line")

    match = _SCALE_NUMBER.search(trimmed)
    if not match:
        raise ParseFailure(f"scale line has no number: {trimmed[:64]!r}")
    number = Decimal(match.group(1).replace(",", "."))

    remainder = trimmed[: match.start()] + " " + trimmed[match.end() :]
    if _SCALE_UNSTABLE.search(remainder):
        stable = False
    elif _SCALE_STABLE.search(remainder):
        stable = True
    else:
        stable = True

    if _SCALE_KG.search(remainder):
        unit = "kg"
    elif _SCALE_G.search(remainder):
        unit = "g"
    else:
        unit = "kg"

    value = number / Decimal(1000) if unit == "g" else number
    return ScaleLine(value=to_kg(value), stable=stable, unit=unit)
