from models.base import Base
from models.job import Job
from models.work_item import WorkItem
from models.event import Event

__all__ = [
    "Base",
    "Job",
    "WorkItem",
    "Event",
]
