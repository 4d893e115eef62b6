"""Workflow definitions and the engine that executes them."""

from .cache import GraphCache
from .conditions import evaluate
from .engine import StepResult, WorkflowEngine, select_branch
from .graph import WorkflowGraph, find_issues, validate_workflow
from .integrations import IntegrationRegistry
from .interpolation import interpolate
from .models import (
    ConditionNode,
    DelayNode,
    Edge,
    EndNode,
    InputNode,
    IntegrationNode,
    MessageNode,
    Node,
    Workflow,
    WorkflowDraft,
)
from .templates import TEMPLATES, build_template

__all__ = [
    "ConditionNode",
    "DelayNode",
    "Edge",
    "EndNode",
    "GraphCache",
    "InputNode",
    "IntegrationNode",
    "IntegrationRegistry",
    "MessageNode",
    "Node",
    "StepResult",
    "TEMPLATES",
    "Workflow",
    "WorkflowDraft",
    "WorkflowEngine",
    "WorkflowGraph",
    "build_template",
    "evaluate",
    "find_issues",
    "interpolate",
    "select_branch",
    "validate_workflow",
]
