"""
Background Job Queue
Dramatiq-based manual sync jobs and the in-process periodic scheduler
"""
from app.services.jobs.broker import broker
from app.services.jobs.tasks import sync_connection_task
from app.services.jobs.scheduler import SyncScheduler

__all__ = ["broker", "sync_connection_task", "SyncScheduler"]
