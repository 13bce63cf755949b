"""HTTP transport policy for a Planka kanban client: concurrency, rate limiting and retry timing."""

__version__ = "0.2.0"
__all__ = ["transport"]