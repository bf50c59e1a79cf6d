"""Gunicorn configuration for production deployment.

Reads settings from environment variables (same as config.py).

The deployment registry lives in process memory, so exactly one worker
must serve all Slack traffic.

Usage:
    gunicorn main:app -c gunicorn.conf.py
"""
import os

# Load from environment (same vars used by config.py)
host = os.getenv("HOST", "0.0.0.0")
port = os.getenv("PORT", "3010")
log_level = os.getenv("LOG_LEVEL", "INFO").lower()
debug = os.getenv("DEBUG", "false").lower() == "true"

# Bind - use HOST and PORT from .env
bind = f"{host}:{port}"

workers = 1
worker_class = "uvicorn.workers.UvicornWorker"

# Playbook runs outlive requests; allow them to be cancelled on shutdown
timeout = int(os.getenv("GUNICORN_TIMEOUT", "120"))
graceful_timeout = int(os.getenv("GUNICORN_GRACEFUL_TIMEOUT", "60"))
keepalive = int(os.getenv("GUNICORN_KEEPALIVE", "5"))

# Logging - use LOG_LEVEL from .env
accesslog = "-" if not debug else None
errorlog = "-"
loglevel = log_level

# Process naming
proc_name = "deploy-bot"
