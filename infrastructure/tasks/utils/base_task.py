"""Common base task for Celery jobs"""
from __future__ import annotations

from celery import Task
from core.logging_config import bind_log_context, clear_log_context, get_logger

logger = get_logger(__name__)


class BaseTask(Task):
    """Binds task identity into the log context and logs the outcome."""

    def before_start(self, task_id, args, kwargs):  # type: ignore[override]
        clear_log_context()
        bind_log_context(task_id=task_id, task_name=self.name)

    def on_failure(self, exc, task_id, args, kwargs, einfo):  # type: ignore[override]
        logger.error(
            "celery_task_failure",
            task_id=task_id,
            task_name=self.name,
            exc=str(exc),
        )
        super().on_failure(exc, task_id, args, kwargs, einfo)

    def on_success(self, retval, task_id, args, kwargs):  # type: ignore[override]
        logger.info(
            "celery_task_success",
            task_id=task_id,
            task_name=self.name,
            result=retval,
        )
        super().on_success(retval, task_id, args, kwargs)

    def after_return(self, status, retval, task_id, args, kwargs, einfo):  # type: ignore[override]
        clear_log_context()
        super().after_return(status, retval, task_id, args, kwargs, einfo)
