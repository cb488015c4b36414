"""Stardust - GitHub analysis operation service.

Queues long-running analysis requests, executes them serially, persists the
queue to Redis and streams progress to every connected client.
"""

__version__ = "0.1.0"
