"""Connectivity, discovery and authorization-policy tests for the demo scenarios."""

from ecs_ambient.testing.progress import ProgressTracker, StepOutcome
from ecs_ambient.testing.results import TestRecorder

__all__ = [
    "ProgressTracker",
    "StepOutcome",
    "TestRecorder",
]
