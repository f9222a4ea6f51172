"""
External Source Adapters

Adapters for credential-gated providers queried at search time.
Each adapter implements the ExternalSourceAdapter interface.
"""

from .base import AdapterResult, ExternalSourceAdapter, ProxyScoreProfile
from .calendar_adapter import CalendarSearchAdapter
from .drive_adapter import DriveSearchAdapter
from .gmail_adapter import GmailSearchAdapter

ADAPTER_CLASSES = {
    GmailSearchAdapter.source: GmailSearchAdapter,
    DriveSearchAdapter.source: DriveSearchAdapter,
    CalendarSearchAdapter.source: CalendarSearchAdapter,
}

__all__ = [
    "ADAPTER_CLASSES",
    "AdapterResult",
    "ExternalSourceAdapter",
    "ProxyScoreProfile",
    "CalendarSearchAdapter",
    "DriveSearchAdapter",
    "GmailSearchAdapter",
]
