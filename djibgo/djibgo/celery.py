import os
from celery import Celery

# Set the default Django settings module for the 'celery' program.
os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'djibgo.settings')

app = Celery('djibgo')

# All celery-related configuration keys carry a `CELERY_` prefix in settings,
# including the beat schedule of the settlement jobs.
app.config_from_object('django.conf:settings', namespace='CELERY')

# Load task modules from all registered Django app configs.
app.autodiscover_tasks()

app.conf.timezone = 'UTC'
