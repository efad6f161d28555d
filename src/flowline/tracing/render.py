"""Rich rendering for cascade contexts."""

from __future__ import annotations

from rich.text import Text
from rich.tree import Tree

from flowline.tracing.cascade import CascadeContext, CascadeStep

_STATUS_STYLES = {
    "completed": ("✓", "green"),
    "failed": ("✗", "red"),
    "running": ("…", "yellow"),
}


def _step_label(step: CascadeStep) -> Text:
    icon, style = _STATUS_STYLES[step.status]
    text = Text()
    text.append(f"{icon} ", style=style)
    text.append(step.name, style="bold" if step.status == "failed" else "")
    if step.duration is not None:
        text.append(f" {step.duration * 1000:.0f}ms", style="dim")
    if step.error is not None:
        text.append(f"  {type(step.error).__name__}: {step.error}", style="red dim")
    return text


def render_tree(ctx: CascadeContext) -> Tree:
    """Build a rich Tree from the root ancestor of ``ctx`` down to ``ctx``.

    Example:
        >>> from rich.console import Console
        >>> Console().print(render_tree(ctx))  # doctest: +SKIP
    """
    chain: list[CascadeContext] = []
    current: CascadeContext | None = ctx
    while current is not None:
        chain.insert(0, current)
        current = current.parent

    root = chain[0]
    tree = Tree(Text(f"{root.name or 'cascade'}  {root.correlation_id}", style="cyan bold"))
    node = tree
    for index, context in enumerate(chain):
        if index > 0:
            node = node.add(
                Text(f"{context.name or 'cascade'} (depth {context.depth})", style="cyan")
            )
        for step in context.steps:
            node.add(_step_label(step))
    return tree
