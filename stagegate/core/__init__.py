"""Core pipeline orchestration components."""

from .orchestrator import PipelineOrchestrator, EnvironmentLocks, aggregate_status
from .supervisor import RunSupervisor
from .interfaces import PipelineRun, StageDefinition, StageResult, StepSpec, Trigger
from .registry import ComponentRegistry

__all__ = [
    "PipelineOrchestrator",
    "EnvironmentLocks",
    "aggregate_status",
    "RunSupervisor",
    "PipelineRun",
    "StageDefinition",
    "StageResult",
    "StepSpec",
    "Trigger",
    "ComponentRegistry",
]
