"""Job scheduling for document processing and embedding."""

from src.pipeline.job_queue import Job, JobQueue

__all__ = [
    "Job",
    "JobQueue",
]
