"""Graph building, planning and execution."""

from landform.orchestrator.expressions import UNKNOWN, Reference, parse_template
from landform.orchestrator.dependency_graph import DependencyGraph, DependencyNode
from landform.orchestrator.builder import ResourceGraph, ResourceGraphBuilder
from landform.orchestrator.planner import (
    ChangeAction,
    ChangeSet,
    ChangeSetEntry,
    Planner,
)
from landform.orchestrator.executor import (
    ApplyResult,
    EntryResult,
    ExecutionStatus,
    Executor,
    ProgressCallback,
)
from landform.orchestrator.orchestrator import Orchestrator

__all__ = [
    # Expressions
    'UNKNOWN',
    'Reference',
    'parse_template',

    # Graphs
    'DependencyGraph',
    'DependencyNode',
    'ResourceGraph',
    'ResourceGraphBuilder',

    # Planning
    'ChangeAction',
    'ChangeSet',
    'ChangeSetEntry',
    'Planner',

    # Execution
    'ApplyResult',
    'EntryResult',
    'ExecutionStatus',
    'Executor',
    'ProgressCallback',

    # Orchestration
    'Orchestrator',
]
