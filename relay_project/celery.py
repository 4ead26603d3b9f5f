"""
Celery application for relay workers.

Queue entries are executed by relay.tasks.process_queue_entry on a worker
consuming the lane's Celery queue.
"""

import os

from celery import Celery

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "relay_project.settings")

app = Celery("relay_project")
app.config_from_object("django.conf:settings", namespace="CELERY")
app.autodiscover_tasks()
