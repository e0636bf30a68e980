"""backq: background jobs with workers and publishers via queues."""

__version__ = "0.1.0"
