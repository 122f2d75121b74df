"""
Centralized Enum definitions for the project.
"""

from enum import Enum


class DecisionAction(str, Enum):
    """What the repricing engine asks the caller to do"""

    UPDATE = "update"
    SKIP = "skip"


class RepricingOutcome(str, Enum):
    """Terminal state of one product within one repricing cycle"""

    UPDATED = "updated"
    SKIPPED_ALREADY_OPTIMAL = "skipped_already_optimal"
    SKIPPED_FLOOR_GUARD = "skipped_floor_guard"
    SKIPPED_NO_COMPETITORS = "skipped_no_competitors"
    FAILED = "failed"

    @property
    def is_skip(self) -> bool:
        return self.value.startswith("skipped_")


class EventSource(str, Enum):
    """Components that publish events on the bus"""

    PRICE_DUMPING = "price_dumping"
    SCHEDULER = "scheduler"
    SYSTEM = "system"
