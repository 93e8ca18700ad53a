"""Task Chat Relay: real-time, room-scoped chat for task discussions."""

__version__ = "0.1.0"
