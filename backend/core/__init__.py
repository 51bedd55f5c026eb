"""
Core Django project initialization.
Loads Celery app for background format generation.
"""

from .celery import app as celery_app

__all__ = ('celery_app',)
