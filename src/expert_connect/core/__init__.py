"""Core modules: models, database, config, errors."""

from expert_connect.core.config import Settings
from expert_connect.core.models import (
    ConnectionRequest,
    ExpertAvailability,
    Notification,
    QueueOverview,
    RequestStatus,
    RequestView,
)

__all__ = [
    "Settings",
    "ConnectionRequest",
    "ExpertAvailability",
    "Notification",
    "QueueOverview",
    "RequestStatus",
    "RequestView",
]
