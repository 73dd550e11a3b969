"""Celery worker configuration.

Background jobs that push payments to a settled state when the request path
could not:
- Retry captures that stalled on a gateway outage
- Release holds left behind by cancelled bookings
"""

from celery import Celery
from celery.schedules import crontab

from visitpay.config import Settings, get_settings


def create_celery_app(settings: Settings | None = None) -> Celery:
    """Build the Celery app against ``settings`` (cached settings by default)."""
    settings = settings or get_settings()

    app = Celery(
        "visitpay_tasks",
        broker=settings.redis_url,
        backend=settings.redis_url,
        include=["visitpay.tasks"],
    )

    app.conf.update(
        # Task settings
        task_serializer="json",
        accept_content=["json"],
        result_serializer="json",
        timezone="UTC",
        enable_utc=True,

        # Task execution settings
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        task_time_limit=300,  # 5 minutes max
        task_soft_time_limit=240,  # Soft limit at 4 minutes

        # Worker settings
        worker_prefetch_multiplier=1,

        # Result backend settings
        result_expires=3600,  # Results expire after 1 hour

        # Beat schedule for periodic tasks
        beat_schedule={
            "retry-stalled-captures": {
                "task": "visitpay.tasks.retry_stalled_captures",
                "schedule": crontab(minute="*/15"),
            },
            "release-cancelled-holds": {
                "task": "visitpay.tasks.release_cancelled_holds",
                "schedule": crontab(minute="*/15"),
            },
        },
    )
    return app


# Entry point for `celery -A visitpay.worker`
celery_app = create_celery_app()


if __name__ == "__main__":
    celery_app.start()
