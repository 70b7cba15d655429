"""
Gunicorn Configuration for the W3bStore ledger core
Run with: gunicorn -c gunicorn_conf.py web3_server:app
"""
import os

# Server socket
bind = f"0.0.0.0:{os.getenv('PORT', '5000')}"
backlog = 2048

# Per-address submission locks live in process memory: one worker per node account
workers = int(os.getenv("WEB_CONCURRENCY", "1"))
worker_class = "uvicorn.workers.UvicornWorker"
worker_connections = 1000
timeout = 180  # payments wait for inclusion (LEDGER_INCLUSION_TIMEOUT)
graceful_timeout = 30
keepalive = 30

# Logging
accesslog = "-"
errorlog = "-"
loglevel = os.getenv("LOG_LEVEL", "info").lower()

# Process naming
proc_name = "w3bstore_ledger_core"
