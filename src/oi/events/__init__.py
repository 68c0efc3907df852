from oi.events.bus import EventBus

__all__ = ["EventBus"]
