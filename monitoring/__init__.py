# PATH: monitoring/__init__.py
"""
Monitoring package for POLYARB.

Stable import contract:
- Event
- EventBus
"""

from monitoring.events import Event, EventBus

__all__ = [
    "Event",
    "EventBus",
]
