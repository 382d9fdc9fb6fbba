"""Building blocks for a distributed instant-messaging push service."""

__version__ = "0.1.0"