from .queue_recovery import queue_recovery_task
from .reachability_sweep import reachability_sweep_task

__all__ = [
    "queue_recovery_task",
    "reachability_sweep_task",
]
