"""
Campaign Pipeline Errors
Error taxonomy shared by the campaign manager, store and worker pool
"""


class CampaignError(Exception):
    """Base class for campaign pipeline errors"""
    pass


class ValidationError(CampaignError):
    """Rejected input (batch too large, unknown parameter set). Nothing is persisted."""
    pass


class NotFound(CampaignError):
    """Unknown campaign or job index"""
    pass


class InvalidState(CampaignError):
    """Operation not allowed in the current campaign/job state"""
    pass


class TransientProcessingError(CampaignError):
    """
    Recoverable failure while processing a job (transcription, scoring,
    network, timeout). Retried with exponential backoff.
    """
    pass


class JobFailure(CampaignError):
    """Permanent job failure. Recorded on the job, never retried."""
    pass
