from .cron import *
from .delivery import deliver_task

__all__ = [
    "deliver_task",
    # Scheduled/Cron Tasks
    "queue_recovery_task",
    "reachability_sweep_task",
]
