"""
wmclean Queue Worker

Long-running worker that takes watermark removal jobs from Redis, runs
the engine and publishes progress and results back to the job.
"""

import logging
import signal
import sys
import time

from rich.console import Console
from rich.logging import RichHandler

from .config import get_settings
from .engine import WatermarkEngine
from .errors import EngineError, InternalAlgorithmError
from .metrics import queue_jobs_total, start_metrics_server
from .pipeline.scheduler import RunPlan
from .protocol import BufferPayload, CompletedMessage, ErrorMessage, ProcessRequest, ProgressMessage
from .queue import QueueClient, get_queue_client

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(message)s",
    handlers=[RichHandler(rich_tracebacks=True)],
)
logger = logging.getLogger(__name__)
console = Console()

# Global flag for graceful shutdown
shutdown_requested = False


def signal_handler(signum, frame):
    """Handle shutdown signals."""
    global shutdown_requested
    logger.info("Shutdown signal received, finishing current job...")
    shutdown_requested = True


def process_job(job_id: str, request: ProcessRequest, queue: QueueClient, engine: WatermarkEngine) -> bool:
    """
    Run one queued request.

    Publishes progress while the engine runs, then exactly one completed or
    error message.

    Returns:
        True if the job completed
    """
    logger.info(f"Processing job {job_id} ({request.buffer.width}x{request.buffer.height})")

    try:
        plan = RunPlan.from_options(request.options)
        result = engine.run_plan(
            request.buffer.to_buffer(),
            plan,
            on_progress=lambda progress: queue.publish(job_id, ProgressMessage(progress=progress)),
        )
    except EngineError as e:
        logger.error(f"Job {job_id} failed: {e.kind}: {e}")
        queue.publish(job_id, ErrorMessage(error=str(e), kind=e.kind))
        queue_jobs_total.labels(status="failed").inc()
        return False
    except Exception as e:
        # Every dequeued job must end with an error or completed message
        logger.exception(f"Job {job_id} failed unexpectedly")
        queue.publish(job_id, ErrorMessage(
            error=f"{type(e).__name__}: {e}",
            kind=InternalAlgorithmError.kind,
        ))
        queue_jobs_total.labels(status="failed").inc()
        return False

    queue.publish(job_id, CompletedMessage(
        result=BufferPayload.from_buffer(result.buffer),
        changed_pixels=result.changed_pixels,
    ))
    queue_jobs_total.labels(status="completed").inc()
    logger.info(f"Job {job_id} completed: {result.changed_pixels} pixel updates")
    return True


def main():
    """Main worker loop."""
    global shutdown_requested

    # Setup signal handlers
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    settings = get_settings()

    console.print("[bold green]wmclean Worker[/bold green]")
    console.print(f"Worker ID: {settings.worker_id}")
    console.print(f"Redis: {settings.redis_url}")
    console.print(f"Execution: {settings.execution_mode}, profile: {settings.default_profile}")
    console.print("")

    if settings.metrics_port > 0:
        start_metrics_server(settings.metrics_port)

    queue = get_queue_client()
    engine = WatermarkEngine(settings)

    # Check connections
    if not queue.health_check():
        logger.error("Failed to connect to Redis")
        sys.exit(1)

    logger.info("Connected to Redis")
    logger.info("Starting job polling loop...")

    while not shutdown_requested:
        try:
            job = queue.dequeue()

            if job:
                job_id, request = job
                process_job(job_id, request, queue, engine)
            else:
                # No jobs, wait and retry
                time.sleep(settings.poll_interval)

        except KeyboardInterrupt:
            break
        except Exception as e:
            logger.error(f"Worker error: {e}")
            time.sleep(5)

    logger.info("Worker shutdown complete")


if __name__ == "__main__":
    main()
