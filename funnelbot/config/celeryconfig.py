from celery.schedules import crontab
from kombu import Queue

from .queues import ALL_QUEUES, MAINTENANCE_QUEUE, REMINDER_QUEUE
from .settings import settings

# Basic Celery Configuration
broker_url = settings.redis_url
result_backend = settings.redis_url

# Task Discovery
include = ["funnelbot.tasks"]

# Timezone Configuration
timezone = settings.REFERENCE_TIMEZONE
enable_utc = True

# Task Result Configuration
result_expires = 3600

# Task Serialization
task_serializer = "json"
accept_content = ["json"]
result_serializer = "json"

# Task Execution Configuration
task_track_started = True
task_time_limit = 30 * 60  # 30 minutes
task_soft_time_limit = 25 * 60  # 25 minutes

# Worker Configuration
worker_prefetch_multiplier = 1
worker_max_tasks_per_child = 1000

# Task Retry Configuration
task_acks_late = True
task_reject_on_worker_lost = True
task_default_retry_delay = 60  # 60 seconds
task_max_retries = 3

# Exponential Backoff Settings
task_retry_backoff = True
task_retry_backoff_max = 700  # Max 700 seconds
task_retry_jitter = False

# Delayed tasks sit in the broker for up to the longest reminder delay
broker_transport_options = {"visibility_timeout": 60 * 60 * 24 * 3}

# One queue per subsystem; each gets its own worker and concurrency ceiling
task_queues = tuple(Queue(name) for name in ALL_QUEUES)
task_default_queue = REMINDER_QUEUE

# Scheduled tasks use the reference timezone (Europe/Moscow by default)
beat_schedule = {
    # Reachability sweep - Run daily at 3:00 AM reference time
    "blockcheck:daily:near": {
        "task": "funnelbot.tasks.cron.reachability_sweep.reachability_sweep_task",
        "schedule": crontab(hour=3, minute=0),
        "args": ("blockcheck_daily_near_cron",),
        "kwargs": {"mode": "near"},
        "options": {"queue": MAINTENANCE_QUEUE},
    },
    # Re-publish pending delayed tasks whose broker message may be gone
    "task-queue-recovery": {
        "task": "funnelbot.tasks.cron.queue_recovery.queue_recovery_task",
        "schedule": crontab(minute="*/10"),
        "args": ("queue_recovery_cron",),
        "options": {"queue": MAINTENANCE_QUEUE},
    },
}

# Beat Scheduler Configuration
beat_schedule_filename = "tmp/celerybeat-schedule"
