# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""W3C Trace Context helpers.

Encodes and decodes ``traceparent`` headers of the form
``00-<32 hex trace id>-<16 hex parent id>-<2 hex flags>``.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass

from flowline.exceptions import ValidationError

TRACEPARENT_VERSION = "00"
SAMPLED_FLAGS = "01"

_TRACEPARENT_PATTERN = re.compile(
    r"^([0-9a-f]{2})-([0-9a-f]{32})-([0-9a-f]{16})-([0-9a-f]{2})$"
)
_HEX_PATTERN = re.compile(r"^[0-9a-f]+$")


@dataclass(frozen=True)
class TraceContext:
    """A W3C trace context header pair."""

    traceparent: str
    tracestate: str | None = None


def _to_hex(identifier: str, length: int) -> str:
    """Render an identifier as exactly ``length`` lowercase hex characters.

    Hex identifiers (dashes ignored) are padded or truncated; anything else
    is hashed so the result stays deterministic.
    """
    compact = identifier.replace("-", "").lower()
    if not compact or not _HEX_PATTERN.match(compact):
        compact = hashlib.sha256(identifier.encode("utf-8")).hexdigest()
    return compact[:length].ljust(length, "0")


def correlation_id_to_trace_id(correlation_id: str) -> str:
    """Convert a correlation id to a 32 hex character trace id."""
    return _to_hex(correlation_id, 32)


def trace_id_to_correlation_id(trace_id: str) -> str:
    """Convert a 32 hex character trace id to UUID layout."""
    return (
        f"{trace_id[0:8]}-{trace_id[8:12]}-{trace_id[12:16]}-"
        f"{trace_id[16:20]}-{trace_id[20:32]}"
    )


def format_traceparent(correlation_id: str, span_id: str, flags: str = SAMPLED_FLAGS) -> str:
    """Build a ``traceparent`` header from cascade identifiers."""
    trace_id = correlation_id_to_trace_id(correlation_id)
    return f"{TRACEPARENT_VERSION}-{trace_id}-{_to_hex(span_id, 16)}-{flags}"


def parse_traceparent(traceparent: str) -> tuple[str, str]:
    """Split a ``traceparent`` header into its trace id and parent span id.

    Args:
        traceparent: The header value.

    Returns:
        ``(trace_id, parent_span_id)``.

    Raises:
        ValidationError: If the header is not a valid version-00 traceparent.
    """
    match = _TRACEPARENT_PATTERN.match(traceparent.strip().lower())
    if not match:
        raise ValidationError(
            f"Invalid traceparent header: {traceparent!r}",
            suggestion="Expected '00-<32 hex trace id>-<16 hex span id>-<2 hex flags>'",
            value=traceparent,
        )
    _, trace_id, parent_id, _ = match.groups()
    if trace_id == "0" * 32 or parent_id == "0" * 16:
        raise ValidationError(
            f"Invalid traceparent header: {traceparent!r} (all-zero identifiers)",
            value=traceparent,
        )
    return trace_id, parent_id
