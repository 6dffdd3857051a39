"""Asynchronous media-processing pipeline: job queue, workers, handlers, reconciliation."""

__version__ = "0.1.0"
