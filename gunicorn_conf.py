"""
Gunicorn configuration for the token purchase server
Uvicorn workers serving webhook_server:app
"""
import os

# Server socket
bind = f"0.0.0.0:{os.getenv('PORT', '5000')}"
backlog = 2048

# Worker processes. Each worker runs its own sweep scheduler; sweeps are safe to
# overlap (row locks + single-credit guard) but one worker keeps provider traffic low.
workers = int(os.getenv("WEB_CONCURRENCY", "1"))
worker_class = "uvicorn.workers.UvicornWorker"
worker_connections = 1000
max_requests = 10000
max_requests_jitter = 1000
timeout = 60  # provider calls are bounded by PROVIDER_TIMEOUT_SECONDS
keepalive = 30

# Logging
accesslog = "-"
errorlog = "-"
loglevel = os.getenv("LOG_LEVEL", "info").lower()
access_log_format = '%(h)s %(l)s %(u)s %(t)s "%(r)s" %(s)s %(b)s "%(f)s" "%(a)s" %(D)s'

proc_name = "token_payments"

daemon = False
pidfile = None

# Each worker needs its own event loop, scheduler and database pool
preload_app = False


def when_ready(server):
    print(f"✅ Gunicorn ready with {workers} uvicorn workers on {bind}")


def post_fork(server, worker):
    print(f"🔧 Worker {worker.pid} started")


def worker_abort(worker):
    print(f"❌ Worker {worker.pid} aborted")


def worker_exit(server, worker):
    print(f"👋 Worker {worker.pid} exited")
