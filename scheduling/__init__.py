"""
Scheduling — priority scoring and business-hour slot packing.

  optimizer           pure slot assignment + completion estimate
  smart_orchestrator  scores a workflow's items and writes the schedule back
"""
from scheduling.optimizer import estimate_completion, optimize_schedule
from scheduling.smart_orchestrator import SmartOrchestrator, score_item

__all__ = ["estimate_completion", "optimize_schedule", "SmartOrchestrator", "score_item"]
