"""
Data models for events emitted by the repricing worker.
"""

import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from .enums import EventSource

PRICE_UPDATED = "price.updated"
PRICE_CHECK_FAILED = "price.check_failed"
CYCLE_COMPLETED = "cycle.completed"


class RepricingEvent(BaseModel):
    """Event describing something the repricing worker did."""

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    event_type: str
    payload: dict[str, Any]
    source: EventSource = EventSource.PRICE_DUMPING
    timestamp: datetime = Field(default_factory=datetime.now)
