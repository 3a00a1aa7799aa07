"""Celery task infrastructure package.

Run a worker and the beat scheduler with::

    celery -A infrastructure.tasks worker -Q reconciliation,default
    celery -A infrastructure.tasks beat
"""
from .config.celery import celery_app

__all__ = ["celery_app"]
