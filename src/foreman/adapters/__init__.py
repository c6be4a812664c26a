from foreman.adapters.git import GitRepository, VcsError
from foreman.adapters.plan import PlanReader, StepSpec, TomlPlanReader
from foreman.adapters.tracker import CommandTracker, IssueTracker, LocalTracker, TrackerError

__all__ = [
    "CommandTracker",
    "GitRepository",
    "IssueTracker",
    "LocalTracker",
    "PlanReader",
    "StepSpec",
    "TomlPlanReader",
    "TrackerError",
    "VcsError",
]
