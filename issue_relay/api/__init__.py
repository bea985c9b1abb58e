"""API routes"""

from issue_relay.api import conflicts, events, queues

__all__ = ["events", "queues", "conflicts"]
