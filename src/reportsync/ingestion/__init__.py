from .backfill import BackfillTrigger
from .orchestrator import IngestionOrchestrator, IngestionTask
from .tasks import BackgroundTask, TaskManager, TaskStatus

__all__ = [
    "BackfillTrigger",
    "BackgroundTask",
    "IngestionOrchestrator",
    "IngestionTask",
    "TaskManager",
    "TaskStatus",
]
