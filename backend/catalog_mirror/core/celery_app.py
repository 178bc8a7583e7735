from celery import Celery

from catalog_mirror.core.config import settings

celery_app = Celery(
    "catalog_mirror",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["catalog_mirror.services.tasks"],
)

celery_app.conf.update(
    result_expires=3600,
    task_acks_late=True,
    worker_max_tasks_per_child=100,  # Restart worker after 100 tasks to release memory held by large syncs
    worker_prefetch_multiplier=1,    # One sync at a time per worker process
    task_compression='gzip',
    result_compression='gzip',

    broker_connection_retry_on_startup=True,
    broker_pool_limit=10,

    task_routes={
        'catalog_mirror.services.tasks.sync_entity_type_task': {'queue': 'sync'},
        'catalog_mirror.services.tasks.sync_all_entity_types_task': {'queue': 'sync'},
        'catalog_mirror.services.tasks.recompute_user_exclusions_task': {'queue': 'exclusions'},
        'catalog_mirror.services.tasks.recompute_exclusions_for_type_task': {'queue': 'exclusions'},
        'catalog_mirror.services.tasks.purge_tombstones_task': {'queue': 'maintenance'},
    },

    beat_schedule={
        "sync-all-entity-types": {
            "task": "catalog_mirror.services.tasks.sync_all_entity_types_task",
            "schedule": 60 * settings.sync_interval_minutes,
        },
        "purge-tombstones-daily": {
            "task": "catalog_mirror.services.tasks.purge_tombstones_task",
            "schedule": 60 * 60 * 24,  # daily
        },
    },
    timezone="UTC",
)

celery_app.conf.worker_send_task_events = True
celery_app.conf.task_send_sent_event = True
