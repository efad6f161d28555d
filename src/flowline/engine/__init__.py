# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""Workflow engine module for Flowline.

This module contains the workflow builder DSL, the frozen plan it produces,
the execution engine, retry/backoff and limit enforcement.
"""

# Loading the workflow submodule binds ``workflow`` on this package to the
# module; the builder import below must come after it to rebind the name.
from flowline.engine.workflow import WorkflowEngine

# isort: split
from flowline.engine.builder import ConditionalChain, WorkflowBuilder, workflow
from flowline.engine.context import StepContext
from flowline.engine.limits import IterationGuard, run_with_deadline
from flowline.engine.plan import (
    BuiltWorkflow,
    ConditionalNode,
    ForEachNode,
    LoopNode,
    ParallelNode,
    StepNode,
)
from flowline.engine.retry import calculate_delay, run_with_retry

__all__ = [
    "BuiltWorkflow",
    "ConditionalChain",
    "ConditionalNode",
    "ForEachNode",
    "IterationGuard",
    "LoopNode",
    "ParallelNode",
    "StepContext",
    "StepNode",
    "WorkflowBuilder",
    "WorkflowEngine",
    "calculate_delay",
    "run_with_deadline",
    "run_with_retry",
    "workflow",
]
