"""Services modules for bootstrap, scheduling, the webhook queue and external enrichment data."""

from .bootstrap import ServiceBootstrapper
from .external_data import ExternalDataService
from .scheduler import SchedulerCoordinator
from .webhook_queue import WebhookQueue

__all__ = [
    'ServiceBootstrapper',
    'ExternalDataService',
    'SchedulerCoordinator',
    'WebhookQueue'
]
