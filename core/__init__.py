"""Loads the Celery app with Django so ``@shared_task`` binds to it."""

from .celery import app as celery_app  # noqa: F401

__all__ = ("celery_app",)
