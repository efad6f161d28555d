# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""Tracing module for Flowline.

This module provides cascade contexts (correlation/span ids with a timed
step ledger), W3C traceparent interop, and rich rendering.
"""

from flowline.tracing.cascade import (
    CascadeContext,
    CascadeStep,
    FiveWHEvent,
    create_cascade_context,
    record_step,
    with_cascade_context,
)
from flowline.tracing.render import render_tree
from flowline.tracing.traceparent import TraceContext, format_traceparent, parse_traceparent

__all__ = [
    "CascadeContext",
    "CascadeStep",
    "FiveWHEvent",
    "TraceContext",
    "create_cascade_context",
    "format_traceparent",
    "parse_traceparent",
    "record_step",
    "render_tree",
    "with_cascade_context",
]
