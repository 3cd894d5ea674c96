"""Export manifest envelope and canonical serialization.

Only ``exported_by.user_id`` is interpreted. Everything else is carried as an
opaque body whose sole operation is producing the canonical bytes a signer
would have signed.
"""

from __future__ import annotations

import json
import math
import uuid
from dataclasses import dataclass
from typing import Any, Mapping

from guildvault.errors import ValidationError


# Integers outside this range are held as f64 by the exporter's JSON writer.
_INT_MIN, _INT_MAX = -(2**63), 2**64 - 1


def format_float(value: float) -> str:
    """Shortest round-trip digits, laid out the way exporters print an f64.

    Unlike repr(), exponents carry no '+' or zero padding (``1e16``,
    ``1e-7``), values down to 1e-5 are positional (``0.00001``) and whole
    numbers keep ``.0``.
    """
    if math.isnan(value) or math.isinf(value):
        raise ValueError("Out of range float values are not JSON compliant")
    if value == 0:
        return "-0.0" if math.copysign(1.0, value) < 0 else "0.0"

    sign = "-" if value < 0 else ""
    mantissa, _, exp = repr(abs(value)).partition("e")
    int_part, _, frac_part = mantissa.partition(".")
    raw = int_part + frac_part
    significant = raw.lstrip("0")
    # decimal point position relative to the first significant digit
    point = len(int_part) + int(exp or 0) - (len(raw) - len(significant))
    digits = significant.rstrip("0")
    n = len(digits)

    if n <= point <= 16:
        body = digits + "0" * (point - n) + ".0"
    elif 0 < point <= 16:
        body = f"{digits[:point]}.{digits[point:]}"
    elif -5 < point <= 0:
        body = "0." + "0" * -point + digits
    elif n == 1:
        body = f"{digits}e{point - 1}"
    else:
        body = f"{digits[0]}.{digits[1:]}e{point - 1}"
    return sign + body


def _encode(value: Any) -> str:
    if value is None or isinstance(value, (str, bool)):
        return json.dumps(value, ensure_ascii=False)
    if isinstance(value, int):
        return str(value) if _INT_MIN <= value <= _INT_MAX else format_float(float(value))
    if isinstance(value, float):
        return format_float(value)
    if isinstance(value, Mapping):
        if not all(isinstance(k, str) for k in value):
            raise TypeError("manifest object keys must be strings")
        return "{" + ",".join(f"{_encode(k)}:{_encode(value[k])}" for k in sorted(value)) + "}"
    if isinstance(value, (list, tuple)):
        return "[" + ",".join(_encode(v) for v in value) + "]"
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def canonical_bytes(document: Any) -> bytes:
    """Deterministic compact JSON, UTF-8.

    Keys are sorted lexicographically at every depth, strings are not
    ASCII-escaped and numbers are written as in `format_float`. Raises
    TypeError or ValueError for content JSON cannot carry.
    """
    return _encode(document).encode("utf-8")


@dataclass(frozen=True)
class ManifestIdentity:
    """The one typed field of a manifest: who exported it."""

    exporter_id: uuid.UUID


@dataclass(frozen=True)
class OpaqueBody:
    """The whole manifest as submitted, reachable only as canonical bytes."""

    _document: Mapping[str, Any]

    def canonical_bytes(self) -> bytes:
        try:
            return canonical_bytes(self._document)
        except (TypeError, ValueError, OverflowError) as exc:
            raise ValidationError("Failed to serialize manifest") from exc


@dataclass(frozen=True)
class ManifestEnvelope:
    identity: ManifestIdentity
    body: OpaqueBody

    @classmethod
    def parse(cls, manifest: Mapping[str, Any]) -> "ManifestEnvelope":
        """Split a manifest into its identity and opaque body.

        Raises ValidationError if exported_by.user_id is missing or not a UUID.
        """
        exported_by = manifest.get("exported_by") if isinstance(manifest, Mapping) else None
        raw_id = exported_by.get("user_id") if isinstance(exported_by, Mapping) else None
        if not isinstance(raw_id, str):
            raise ValidationError("manifest.exported_by.user_id is required")
        try:
            exporter_id = uuid.UUID(raw_id)
        except ValueError:
            raise ValidationError("manifest.exported_by.user_id is required")
        return cls(identity=ManifestIdentity(exporter_id), body=OpaqueBody(manifest))
