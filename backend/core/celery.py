"""
Celery configuration for background task processing.

Used for format bundle generation, purchaser file cleanup and play analytics.
"""

import os
from celery import Celery
from celery.schedules import crontab

# Set default Django settings module
os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'core.settings')

app = Celery('core')

# Load configuration from Django settings with 'CELERY_' prefix
app.config_from_object('django.conf:settings', namespace='CELERY')

# Auto-discover tasks in all installed apps
app.autodiscover_tasks()


@app.on_after_finalize.connect
def setup_periodic_tasks(sender, **kwargs):
    """Schedule the daily purge of purchaser-specific files."""
    from audio.conf import get_audio_settings

    if get_audio_settings().reset_purchased_interval == 'daily':
        sender.add_periodic_task(
            crontab(hour=3, minute=0),
            sender.signature('audio.tasks.purge_purchased_files'),
            name='purge purchased audio files',
        )
