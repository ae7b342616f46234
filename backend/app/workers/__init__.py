"""
Workers Package
Background worker pool for bulk audit campaigns
"""
from app.workers.audit_worker import AuditWorker, JobOutcome

__all__ = [
    "AuditWorker",
    "JobOutcome",
]
