"""
Configuración de Celery para tareas en background:
reintentos de emisión de tickets y barrido periódico de órdenes vencidas
"""
from celery import Celery
from kombu import Queue, Exchange
import os
import logging

from app.core.config import settings

logger = logging.getLogger(__name__)

REDIS_URL = settings.REDIS_URL
REDIS_MAX_CONNECTIONS = int(os.getenv("CELERY_REDIS_MAX_CONNECTIONS", "50"))

celery_app = Celery(
    "ticketera",
    broker=REDIS_URL,
    backend=REDIS_URL,
    include=[
        "services.ticket_purchase.tasks.issuance_tasks",
    ]
)

default_exchange = Exchange("default", type="direct")
priority_exchange = Exchange("priority", type="direct")

celery_app.conf.task_queues = (
    # Emisión de tickets de órdenes ya pagadas
    Queue("high_priority", priority_exchange, routing_key="high"),
    # Barrido de expiración y operaciones normales
    Queue("default", default_exchange, routing_key="default"),
    # Regeneración de QR/PDF
    Queue("low_priority", default_exchange, routing_key="low"),
)

celery_app.conf.task_routes = {
    "issue_order_tickets": {"queue": "high_priority"},
    "sweep_expired_orders": {"queue": "default"},
    "regenerate_ticket_assets": {"queue": "low_priority"},
}

celery_app.conf.beat_schedule = {
    "sweep-expired-orders": {
        "task": "sweep_expired_orders",
        "schedule": float(settings.SWEEP_INTERVAL_SECONDS),
    },
}

celery_app.conf.update(
    # Serialización
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",

    timezone="UTC",
    enable_utc=True,

    task_track_started=True,

    # Límites de tiempo
    task_time_limit=10 * 60,
    task_soft_time_limit=8 * 60,

    # Solo 1 tarea por worker a la vez
    worker_prefetch_multiplier=1,

    broker_pool_limit=REDIS_MAX_CONNECTIONS,
    redis_max_connections=REDIS_MAX_CONNECTIONS,

    broker_connection_retry_on_startup=True,
    broker_connection_max_retries=10,

    # ACK late: confirmar tarea solo cuando termina
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    result_expires=3600,

    worker_concurrency=4,
    worker_max_tasks_per_child=1000,

    task_default_queue="default",
    task_default_exchange="default",
    task_default_routing_key="default",

    task_annotations={
        "regenerate_ticket_assets": {"rate_limit": "100/m"},
    },
)

logger.info(
    "Celery configurado - Broker: %s, Pool limit: %d, Concurrency: %d",
    REDIS_URL.split("@")[-1] if "@" in REDIS_URL else REDIS_URL,
    REDIS_MAX_CONNECTIONS,
    celery_app.conf.worker_concurrency
)
