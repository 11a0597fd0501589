from celery import Celery

# Create Celery app
celery = Celery("funnelbot")

# Load configuration from funnelbot.config.celeryconfig module
celery.config_from_object("funnelbot.config.celeryconfig")
