"""Celery beat schedule configuration.

The reconciliation sweep is the backstop for lost gateway notifications, so
it runs on a fixed interval regardless of traffic.
"""
from __future__ import annotations

from core.settings import payment_settings

CELERY_BEAT_SCHEDULE = {
    "payments-sweep-expired-orders": {
        "task": "payments.sweep_expired_orders",
        "schedule": float(payment_settings.sweep.interval_seconds),
        # A sweep that waited longer than one interval is superseded by the next
        "options": {"expires": float(payment_settings.sweep.interval_seconds)},
    },
}
