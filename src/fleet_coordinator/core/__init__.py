"""Core coordination models and configuration."""

from .config import FleetConfig, load_config
from .plan import Plan, PlanDefinition, PlanTask, TaskDefinition, TaskStatus, parse_plan
from .workspace import WorkspaceRecord, WorkspaceRegistry

__all__ = [
    "FleetConfig",
    "load_config",
    "Plan",
    "PlanDefinition",
    "PlanTask",
    "TaskDefinition",
    "TaskStatus",
    "parse_plan",
    "WorkspaceRecord",
    "WorkspaceRegistry",
]
