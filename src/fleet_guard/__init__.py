"""Keep a fleet of agent processes alive and fed with scheduled work."""

__version__ = "0.1.0"
