"""
Prometheus metrics for the watermark engine and queue worker.
"""
from prometheus_client import Counter, Histogram, start_http_server
import logging

logger = logging.getLogger(__name__)

runs_total = Counter('wmclean_runs_total', 'Engine runs', ['profile', 'strategy', 'status'])
run_duration_seconds = Histogram(
    'wmclean_run_duration_seconds',
    'Engine run duration',
    ['strategy'],
    buckets=[0.1, 0.5, 1, 2, 5, 10, 30, 60]
)
pixels_repaired_total = Counter('wmclean_pixels_repaired_total', 'Pixels changed by repair', ['profile'])
channel_fallbacks_total = Counter(
    'wmclean_channel_fallbacks_total',
    'Delegated runs retried on the cooperative strategy'
)
queue_jobs_total = Counter('wmclean_queue_jobs_total', 'Queue jobs handled', ['status'])


def start_metrics_server(port: int) -> bool:
    """Expose metrics over HTTP. Returns False if the port is unavailable."""
    try:
        start_http_server(port)
        logger.info(f"Metrics server listening on :{port}")
        return True
    except OSError as e:
        logger.warning(f"Failed to start metrics server on :{port}: {e}")
        return False
