# Gunicorn configuration for FanClash Backend

import os

# Server socket - must bind to 0.0.0.0 on the hosting platform
port = os.environ.get('PORT', '5000')
bind = f"0.0.0.0:{port}"
backlog = 2048

print(f"🚀 Gunicorn binding to: {bind}")

# Worker processes
workers = int(os.environ.get('WEB_CONCURRENCY', '2'))
worker_class = 'sync'
worker_connections = 1000
max_requests = 1000  # Restart workers after 1000 requests to prevent memory leaks
max_requests_jitter = 50

# Timeouts - a single gateway call may take up to MPESA_REQUEST_TIMEOUT seconds
timeout = 120
keepalive = 30
graceful_timeout = 60

preload_app = True

# Logging
accesslog = '-'
errorlog = '-'
loglevel = 'info'
access_log_format = '%(h)s %(l)s %(u)s %(t)s "%(r)s" %(s)s %(b)s "%(f)s" "%(a)s" %(D)s'

# Process naming
proc_name = 'fanclash-backend'

# Security
limit_request_line = 4094
limit_request_fields = 100
limit_request_field_size = 8190


def when_ready(server):
    server.log.info("🚀 FanClash Backend server is ready. Listening on %s", server.address)

    # The sweep runs once, in the master; workers only serve requests
    from app import start_mpesa_scheduler
    start_mpesa_scheduler()


def worker_int(worker):
    worker.log.info("Worker received INT or QUIT signal")


def post_fork(server, worker):
    server.log.info("Worker spawned (pid: %s)", worker.pid)

    # Threads do not survive fork: each worker runs its own notification worker
    from app import start_notification_worker
    start_notification_worker()
