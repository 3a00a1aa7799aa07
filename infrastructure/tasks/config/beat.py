"""Celery beat schedule: periodic reconciliation jobs."""
from __future__ import annotations

from core.settings import mpesa_settings


_SWEEP_SECONDS = mpesa_settings.verifier.sweep_interval_seconds

CELERY_BEAT_SCHEDULE = {
    "payments-verify-pending": {
        "task": "payments.verify_pending",
        "schedule": _SWEEP_SECONDS,
        # a sweep older than one interval is superseded by the next one
        "options": {"expires": _SWEEP_SECONDS},
    },
    "payments-reprocess-callbacks": {
        "task": "payments.reprocess_callbacks",
        "schedule": _SWEEP_SECONDS,
        "options": {"expires": _SWEEP_SECONDS},
    },
}
