"""
Queue module.
Contains the channel pool, connector, expiry reaper and engine facade.
"""

from docqueue.queue.channel import Channel
from docqueue.queue.connector import Connector
from docqueue.queue.engine import QueueEngine, clamp_channel_count
from docqueue.queue.expiry import ExpiryReaper

__all__ = [
    "Channel",
    "Connector",
    "ExpiryReaper",
    "QueueEngine",
    "clamp_channel_count",
]
