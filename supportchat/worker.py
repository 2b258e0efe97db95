"""Celery worker entry point.

Run with::

    celery -A supportchat.worker worker -Q critical,analysis,default,notifications,low,low_priority
"""

from __future__ import annotations

from dotenv import load_dotenv

from .app_logging import init_logging
from .container import build_container
from .jobs.celery_app import register_tasks

load_dotenv()
init_logging(component="worker")

container = build_container(forward_events=True)
if container.celery_app is None:
    raise RuntimeError("CELERY_BROKER_URL not configured")

app = container.celery_app
tasks = register_tasks(app, container.registry, container.dead_letters)
