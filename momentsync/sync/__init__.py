from momentsync.sync.errors import FailureKind, RemoteError
from momentsync.sync.schemas import MomentDTO, Page, DaySummaryDTO

__all__ = [
    "FailureKind",
    "RemoteError",
    "MomentDTO",
    "Page",
    "DaySummaryDTO",
]
