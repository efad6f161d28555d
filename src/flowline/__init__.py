# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""Flowline - durable workflow orchestration for Python.

Flowline compiles a fluent workflow definition (sequential steps, parallel
groups, conditionals, loops and for-each, with retry, timeout and
error-handler policy) into an immutable plan and runs it on asyncio.
Runs can be made durable with a checkpointing state adapter, traced with
cascade contexts, and scheduled externally with the cron evaluator.

Example:
    Build and run a workflow::

        from flowline import workflow

        wf = (
            workflow("pricing")
            .step("add5", lambda data: {"value": data["value"] + 5})
            .step("double", lambda data: {"value": data["value"] * 2})
            .build()
        )
        result = await wf.execute({"value": 10})  # {"value": 30}

    Make it durable::

        from flowline import InMemoryStorage, WorkflowStateAdapter

        adapter = WorkflowStateAdapter(InMemoryStorage())
        await wf.execute({"value": 10}, run_id="run-1", state_adapter=adapter)

Modules:
    config: Policy models and YAML engine settings.
    engine: Builder DSL, plan, execution engine, retry and limits.
    state: State adapter, storage contract and persisted models.
    tracing: Cascade contexts and W3C traceparent interop.
    schedule: Cron parsing, matching and next-occurrence search.
    reporting: Rich console progress reporter.
    exceptions: Custom exception hierarchy.
"""

from flowline.config import EngineSettings, RetryConfig, load_settings
from flowline.engine import BuiltWorkflow, StepContext, WorkflowBuilder, WorkflowEngine, workflow
from flowline.reporting import ConsoleReporter
from flowline.schedule import (
    get_next_cron_date,
    get_next_cron_ms,
    matches_cron,
    parse_cron,
    to_cron,
)
from flowline.state import InMemoryStorage, WorkflowStateAdapter
from flowline.tracing import create_cascade_context, record_step, with_cascade_context

__version__ = "0.1.0"

__all__ = [
    "BuiltWorkflow",
    "ConsoleReporter",
    "EngineSettings",
    "InMemoryStorage",
    "RetryConfig",
    "StepContext",
    "WorkflowBuilder",
    "WorkflowEngine",
    "WorkflowStateAdapter",
    "__version__",
    "create_cascade_context",
    "get_next_cron_date",
    "get_next_cron_ms",
    "load_settings",
    "matches_cron",
    "parse_cron",
    "record_step",
    "to_cron",
    "with_cascade_context",
    "workflow",
]
