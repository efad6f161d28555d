# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""Console progress reporting for workflow runs.

The ConsoleReporter prints step progress to stderr with rich formatting.
It is passed to the engine explicitly; nothing here is global.
"""

from __future__ import annotations

from typing import Any

from rich.console import Console
from rich.text import Text


class ConsoleReporter:
    """Prints workflow progress lines to a rich console.

    Attributes:
        console: Console to print to (stderr by default).
        enabled: When False every method is a no-op.

    Example:
        >>> reporter = ConsoleReporter()
        >>> await wf.execute({"value": 1}, reporter=reporter)  # doctest: +SKIP
    """

    def __init__(self, console: Console | None = None, *, enabled: bool = True) -> None:
        self.console = console or Console(stderr=True, highlight=False)
        self.enabled = enabled

    def run_start(self, workflow_name: str, run_id: str | None = None) -> None:
        """Log the start of a run."""
        if not self.enabled:
            return
        text = Text()
        text.append("▶ ", style="cyan")
        text.append("Workflow: ", style="cyan")
        text.append(workflow_name, style="cyan bold")
        if run_id:
            text.append(f" [{run_id}]", style="dim")
        self.console.print(text)

    def step_start(self, step_name: str, attempt: int = 1) -> None:
        """Log a step attempt starting."""
        if not self.enabled:
            return
        text = Text()
        text.append("┌─ ", style="cyan")
        text.append(step_name, style="cyan bold")
        if attempt > 1:
            text.append(f" [attempt {attempt}]", style="dim")
        self.console.print(text)

    def step_complete(
        self,
        step_name: str,
        elapsed: float,
        *,
        output: Any = None,
        replayed: bool = False,
    ) -> None:
        """Log a step completing.

        Args:
            step_name: Name of the step.
            elapsed: Elapsed time in seconds.
            output: The step output; mapping keys are listed.
            replayed: True when the result came from a checkpoint.
        """
        if not self.enabled:
            return
        parts = [f"{elapsed:.2f}s"]
        if replayed:
            parts.append("replayed")
        if isinstance(output, dict) and output:
            parts.append(f"→ {list(output.keys())}")

        text = Text()
        text.append("└─ ", style="green")
        text.append("✓ ", style="green")
        text.append(step_name, style="green")
        text.append(f"  ({', '.join(parts)})", style="dim")
        self.console.print(text)

    def step_failed(self, step_name: str, elapsed: float, error: BaseException) -> None:
        """Log a step attempt failing."""
        if not self.enabled:
            return
        text = Text()
        text.append("└─ ", style="red")
        text.append("✗ ", style="red")
        text.append(step_name, style="red")
        text.append(f"  ({elapsed:.2f}s)", style="dim")
        self.console.print(text)
        self.console.print(
            f"      {type(error).__name__}: {error}", style="red dim", markup=False
        )

    def retry(self, step_name: str, attempt: int, delay: float) -> None:
        """Log a scheduled retry."""
        if not self.enabled:
            return
        self.console.print(
            Text(f"↻ Retrying {step_name} (attempt {attempt}) in {delay:.2f}s", style="yellow")
        )

    def handler_recovered(self, step_name: str, action: str) -> None:
        """Log an error handler recovering a step."""
        if not self.enabled:
            return
        self.console.print(Text(f"⚑ {step_name}: error handler chose {action}", style="yellow"))

    def group_summary(
        self,
        group_name: str,
        success_count: int,
        failure_count: int,
        total_elapsed: float,
    ) -> None:
        """Log the outcome of a parallel group or for-each node."""
        if not self.enabled:
            return
        text = Text()
        text.append("└─ ", style="cyan")
        if failure_count == 0:
            text.append("✓ ", style="green")
            text.append(group_name, style="green")
            text.append(
                f"  ({success_count}/{success_count} succeeded, {total_elapsed:.2f}s)",
                style="dim",
            )
        else:
            style = "yellow" if success_count > 0 else "red"
            text.append("◆ ", style=style)
            text.append(group_name, style=style)
            text.append(
                f"  ({success_count} succeeded, {failure_count} failed, {total_elapsed:.2f}s)",
                style="dim",
            )
        self.console.print(text)

    def run_complete(self, workflow_name: str, elapsed: float) -> None:
        """Log a run completing."""
        if not self.enabled:
            return
        text = Text()
        text.append(f"✓ {workflow_name} completed", style="green bold")
        text.append(f" ({elapsed:.2f}s)", style="dim")
        self.console.print(text)

    def run_failed(self, workflow_name: str, error: BaseException) -> None:
        """Log a run failing."""
        if not self.enabled:
            return
        text = Text()
        text.append(f"✗ {workflow_name} failed: ", style="red bold")
        text.append(f"{type(error).__name__}: {error}", style="red")
        self.console.print(text)
