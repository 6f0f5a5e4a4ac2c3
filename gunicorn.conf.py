"""
Gunicorn Configuration

Uvicorn workers under Gunicorn for production deployment.
"""

import multiprocessing
import os

# Server socket
bind = os.getenv("BIND", "0.0.0.0:8000")
backlog = 2048

# Worker processes. A metrics miss holds one DB connection per concurrent
# branch (aggregate, previous period, product costs, marketing), so keep
# workers * concurrency within the database connection limit.
workers = int(os.getenv("WORKERS", multiprocessing.cpu_count() + 1))
worker_class = "uvicorn.workers.UvicornWorker"
max_requests = 5000
max_requests_jitter = 500

# Synchronous recompute on a stale 90d snapshot can take a while
timeout = int(os.getenv("WORKER_TIMEOUT", 120))
graceful_timeout = 30
keepalive = 5

proc_name = "operation-metrics-api"

# Logging is handled by structlog inside the app; these cover gunicorn itself
errorlog = "-"
accesslog = None
loglevel = os.getenv("LOG_LEVEL", "info").lower()


def post_fork(server, worker):
    server.log.info("Worker spawned (pid: %s)", worker.pid)


def worker_abort(worker):
    worker.log.warning("Worker aborted after timeout (pid: %s)", worker.pid)
