from celery import Celery

from mercatur.core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "mercatur_api",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["mercatur.profiles.tasks"],
)
celery_app.conf.task_always_eager = settings.celery_task_always_eager
celery_app.conf.task_ignore_result = True
