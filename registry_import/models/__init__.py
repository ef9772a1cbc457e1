"""Database models."""
from registry_import.models.import_job import ImportJob
from registry_import.models.queue_item import ShareholderImportQueueItem
from registry_import.models.shareholding import Shareholding
from registry_import.models.staging import StagingLease, StagingRow

__all__ = [
    "ImportJob",
    "ShareholderImportQueueItem",
    "Shareholding",
    "StagingLease",
    "StagingRow",
]
