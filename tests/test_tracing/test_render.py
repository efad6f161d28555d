"""Tests for rich cascade rendering."""

from __future__ import annotations

from rich.console import Console

from flowline.tracing.cascade import create_cascade_context, record_step
from flowline.tracing.render import render_tree


def test_render_tree(recording_console: Console) -> None:
    """Test the tree shows every generation and step status."""
    root = create_cascade_context(name="order")
    record_step(root, "validate").complete()
    child = root.child("payment")
    record_step(child, "charge").fail(RuntimeError("declined"))
    record_step(child, "refund")

    recording_console.print(render_tree(child))
    output = recording_console.file.getvalue()

    assert f"order  {root.correlation_id}" in output
    assert "payment (depth 1)" in output
    assert "✓ validate" in output
    assert "✗ charge" in output
    assert "RuntimeError: declined" in output
    assert "… refund" in output
