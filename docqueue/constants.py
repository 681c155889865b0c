"""
Application constants.
Centralized location for all constant values used across the application.
"""

from enum import StrEnum

# Owner value of an item nobody has claimed
NONE = "NONE"


class ChannelState(StrEnum):
    """
    Channel lifecycle states.

    State transitions:
    - IDLE -> CLAIMED (connector hands over a claimed item)
    - CLAIMED -> PROCESSING (handler invoked)
    - PROCESSING -> IDLE (success: archived, failure: released for re-claim)
    """

    IDLE = "idle"
    CLAIMED = "claimed"
    PROCESSING = "processing"


class ReclaimReason(StrEnum):
    """Why a stale lease was reset to claimable."""

    VERSION_DRIFT = "version_drift"
    STALE_LEASE = "stale_lease"


# Channel pool bounds
MIN_CHANNELS = 1
MAX_CHANNELS = 50

HISTORY_SUFFIX = "_consumed"

# Metrics names
METRIC_ITEMS_PUSHED = "queue_items_pushed_total"
METRIC_ITEMS_CLAIMED = "queue_items_claimed_total"
METRIC_ITEMS_COMPLETED = "queue_items_completed_total"
METRIC_ITEM_DURATION = "queue_item_duration_seconds"
METRIC_LEASES_RECLAIMED = "queue_leases_reclaimed_total"
METRIC_HISTORY_EXPIRED = "queue_history_expired_total"
METRIC_CHANNELS_BUSY = "queue_channels_busy"

# Trace span names
SPAN_PUSH_ITEM = "push_item"
SPAN_CLAIM_ITEM = "claim_item"
SPAN_PROCESS_ITEM = "process_item"
SPAN_RECLAIM_STALE = "reclaim_stale"
