"""
API Dependencies
Shared campaign pipeline services for the endpoints
"""
from typing import Optional

from fastapi import HTTPException, status

from app.core.container import ServiceContainer
from app.domain.services.campaign_manager import CampaignManager
from app.workers.audit_worker import AuditWorker


async def get_campaign_manager() -> CampaignManager:
    """
    Get the campaign manager.

    Raises:
        HTTPException: 503 if the pipeline services failed to start
    """
    try:
        container = await ServiceContainer.get_instance()
    except RuntimeError as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Campaign services unavailable: {e}"
        )
    return container.manager


async def get_audit_worker() -> Optional[AuditWorker]:
    """Get the audit worker, None if it is not configured."""
    try:
        container = await ServiceContainer.get_instance()
    except RuntimeError:
        return None
    return container.worker
