"""At-most-once execution of jobs and API requests keyed by idempotency keys."""

__version__ = "0.1.0"
