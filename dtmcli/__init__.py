"""Client for a distributed transaction manager: saga, xa, reliable messages, barriers, workflows."""

__version__ = "0.1.0"