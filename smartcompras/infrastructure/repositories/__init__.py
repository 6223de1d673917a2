from .allocation_repository import AllocationRepository
from .quote_repository import QuoteRepository
from .requisition_repository import RequisitionRepository
from .status_event_repository import StatusEventRepository
from .vote_repository import VoteRepository

__all__ = [
    "AllocationRepository",
    "QuoteRepository",
    "RequisitionRepository",
    "StatusEventRepository",
    "VoteRepository",
]
