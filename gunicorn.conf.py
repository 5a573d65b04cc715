"""Gunicorn settings for the billing API.

Usage:
    gunicorn -c gunicorn.conf.py clubpay.main:app

Every value can be overridden through a GUNICORN_* environment variable.
"""
from __future__ import annotations

import multiprocessing
import os


def _int_env(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


bind = os.getenv("GUNICORN_BIND", "0.0.0.0:8001")

# Webhook bursts from the provider are I/O bound; size for concurrency.
workers = _int_env("GUNICORN_WORKERS", multiprocessing.cpu_count() * 2 + 1)
worker_class = "uvicorn.workers.UvicornWorker"
worker_tmp_dir = "/dev/shm"

# Provider calls time out after 30s; leave headroom above that.
timeout = _int_env("GUNICORN_TIMEOUT", 90)
graceful_timeout = _int_env("GUNICORN_GRACEFUL_TIMEOUT", 30)
keepalive = _int_env("GUNICORN_KEEPALIVE", 5)

max_requests = _int_env("GUNICORN_MAX_REQUESTS", 1000)
max_requests_jitter = _int_env("GUNICORN_MAX_REQUESTS_JITTER", 50)

preload_app = os.getenv("GUNICORN_PRELOAD", "false").lower() == "true"

accesslog = os.getenv("GUNICORN_ACCESSLOG", "-")
errorlog = os.getenv("GUNICORN_ERRORLOG", "-")
loglevel = os.getenv("GUNICORN_LOGLEVEL", "info")
access_log_format = '%(h)s "%(r)s" %(s)s %(b)s %(D)s "%({x-request-id}o)s"'

proc_name = "clubpay"
