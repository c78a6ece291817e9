"""Request guard: per-request deadlines."""

from ndc_gateway.guard.deadline import Deadline, GuardConfig, GuardState

__all__ = ["Deadline", "GuardConfig", "GuardState"]
