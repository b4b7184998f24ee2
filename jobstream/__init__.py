"""
jobstream

A durable, priority-aware job queue engine: jobs grouped into named queues,
handed to polling workers through an atomic claim, with delayed scheduling
and backoff retry on top of a shared SQL store.
"""

__version__ = "1.0.0"
