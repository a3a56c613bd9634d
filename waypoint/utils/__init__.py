from .retry import classify_error, compute_backoff, schedule_retry

__all__ = ["classify_error", "compute_backoff", "schedule_retry"]
