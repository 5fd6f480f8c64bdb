"""Batch rendering, queueing and dispatch of mass push-notification jobs over Redis."""

__version__ = "0.1.0"

__all__ = [
    "jobs",
    "process_batch_worker",
    "queue",
    "resume_job_worker",
    "stage_status",
    "util",
    "worker",
]