"""
Startup script for the API, one Celery worker per queue and Celery beat.
Manages all services with proper logging and error handling
"""

import multiprocessing
import subprocess
import sys
import time
import signal
from pathlib import Path

# Add the parent directory to Python path to import funnelbot modules
sys.path.insert(0, str(Path(__file__).parent.parent))

from funnelbot.config.queues import (
    BROADCAST_QUEUE,
    MAINTENANCE_QUEUE,
    OFFER_EXPIRE_QUEUE,
    REMINDER_QUEUE,
)
from funnelbot.config.settings import settings
from funnelbot.utils.logging import get_logger

logger = get_logger()

PROJECT_ROOT = str(Path(__file__).parent.parent)

# Each queue gets its own worker so its concurrency ceiling is independent
WORKER_CONCURRENCY = {
    REMINDER_QUEUE: settings.REMINDER_QUEUE_CONCURRENCY,
    OFFER_EXPIRE_QUEUE: settings.OFFER_QUEUE_CONCURRENCY,
    BROADCAST_QUEUE: settings.BROADCAST_QUEUE_CONCURRENCY,
    MAINTENANCE_QUEUE: settings.MAINTENANCE_QUEUE_CONCURRENCY,
}


def setup_signal_handlers():
    """Setup signal handlers for graceful shutdown"""

    def signal_handler(signum, frame):
        logger.info(f"Received signal {signum}, initiating shutdown...")
        raise KeyboardInterrupt

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)


def _run(name: str, command: list):
    try:
        logger.info(f"Starting {name} process")
        subprocess.run(command, check=True, cwd=PROJECT_ROOT)
    except subprocess.CalledProcessError as e:
        logger.error(f"{name} process failed with return code {e.returncode}: {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info(f"{name} process interrupted by user")
    except Exception as e:
        logger.error(f"Unexpected error in {name} process: {e}")
        sys.exit(1)


def run_fastapi_app():
    """Run FastAPI server"""
    _run(
        "FastAPI",
        [
            sys.executable,
            "-m",
            "uvicorn",
            "funnelbot.main:app",
            "--host",
            "0.0.0.0",
            "--port",
            "8000",
        ],
    )


def run_celery_worker(queue_name: str, concurrency: int):
    """Run a Celery worker bound to a single queue"""
    _run(
        f"Celery worker [{queue_name}]",
        [
            sys.executable,
            "-m",
            "celery",
            "-A",
            "funnelbot.celery",
            "worker",
            "--loglevel=info",
            "-Q",
            queue_name,
            "-c",
            str(concurrency),
            "-n",
            f"{queue_name}@%h",
        ],
    )


def run_celery_beat():
    """Run Celery beat for the recurring triggers"""
    _run(
        "Celery beat",
        [sys.executable, "-m", "celery", "-A", "funnelbot.celery", "beat", "--loglevel=info"],
    )


def check_redis_connection():
    """Check if Redis server is accessible"""
    try:
        import redis

        r = redis.Redis(
            host=settings.REDIS_HOST,
            port=settings.REDIS_PORT,
            db=settings.REDIS_DB,
            password=settings.REDIS_PASSWORD or None,
            socket_connect_timeout=5,
        )
        r.ping()
        logger.info("Redis connection successful")
        return True
    except Exception as e:
        logger.error(f"Redis connection failed: {e}")
        logger.error("Please ensure Redis server is running")
        return False


def monitor_processes(processes):
    """Monitor running processes and handle failures"""
    logger.info("Starting process monitoring")

    while True:
        for process in processes:
            if not process.is_alive():
                exit_code = process.exitcode
                logger.error(
                    f"{process.name} process died unexpectedly with exit code: {exit_code}"
                )

                # Terminate remaining processes
                terminate_processes(processes)
                sys.exit(1)

        time.sleep(1)


def terminate_processes(processes):
    """Gracefully terminate all processes"""
    logger.info("Initiating graceful shutdown of all services")

    for process in processes:
        if process.is_alive():
            logger.info(f"Terminating {process.name} process")
            process.terminate()

    for process in processes:
        try:
            process.join(timeout=10)
            if process.is_alive():
                logger.warning(
                    f"{process.name} did not terminate gracefully, force killing"
                )
                process.kill()
                process.join()
            else:
                logger.info(f"{process.name} terminated successfully")
        except Exception as e:
            logger.error(f"Error terminating {process.name}: {e}")


def main():
    """Start and supervise the API, the queue workers and beat"""
    multiprocessing.freeze_support()
    setup_signal_handlers()

    logger.info("=" * 60)
    logger.info("Starting Funnelbot services (FastAPI + Celery workers + beat)")
    logger.info("=" * 60)

    # Fail fast on a missing bot token before spawning anything
    settings.require_bot_token()

    if not check_redis_connection():
        logger.error("Cannot start services without Redis connection")
        sys.exit(1)

    processes = []

    try:
        fastapi_process = multiprocessing.Process(
            target=run_fastapi_app, name="FastAPI", daemon=False
        )
        fastapi_process.start()
        processes.append(fastapi_process)

        for queue_name, concurrency in WORKER_CONCURRENCY.items():
            worker = multiprocessing.Process(
                target=run_celery_worker,
                args=(queue_name, concurrency),
                name=f"Worker[{queue_name}]",
                daemon=False,
            )
            worker.start()
            processes.append(worker)

        beat_process = multiprocessing.Process(
            target=run_celery_beat, name="Beat", daemon=False
        )
        beat_process.start()
        processes.append(beat_process)

        logger.info("All services started")
        logger.info("FastAPI server: http://localhost:8000")
        logger.info("-" * 60)

        monitor_processes(processes)

    except KeyboardInterrupt:
        logger.info("Shutdown signal received")
    except Exception as e:
        logger.error(f"Unexpected error in main process: {e}")
    finally:
        terminate_processes(processes)
        logger.info("All services stopped successfully")


if __name__ == "__main__":
    main()
