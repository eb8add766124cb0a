"""Orchestrator for helm-releases.

This module provides the orchestration of releases for the active release
target, including the named steps exposed to the build.
"""

from helm_releases.config import OrchestratorConfig

from .orchestrator import (
    ExecutionPlan,
    Orchestrator,
    Selection,
    build_selection,
    select_target,
)
from .steps import Step, StepKind

__all__ = [
    "Orchestrator",
    "OrchestratorConfig",
    "ExecutionPlan",
    "Selection",
    "Step",
    "StepKind",
    "build_selection",
    "select_target",
]
