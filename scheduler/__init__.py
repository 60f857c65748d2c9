"""Scheduled message dispatch."""
from scheduler.dispatcher import ScheduledMessageDispatcher

__all__ = ["ScheduledMessageDispatcher"]
