"""
Campaigns API
Bulk audit campaigns: creation, status, operator actions and worker status
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from app.api.v1.dependencies import get_audit_worker, get_campaign_manager
from app.domain.exceptions import CampaignError, InvalidState, NotFound, ValidationError
from app.domain.models.campaign import (
    Campaign,
    CampaignConfig,
    CampaignStatus,
    JobInput,
    PaginatedCampaigns,
)
from app.domain.services.campaign_manager import CampaignManager
from app.workers.audit_worker import AuditWorker

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/campaigns", tags=["campaigns"])


class CampaignCreate(BaseModel):
    """Request body for creating a bulk audit campaign"""
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    project_id: Optional[str] = None
    created_by: Optional[str] = None
    parameter_set_id: str = Field(..., min_length=1, description="QA parameter set used for scoring")
    jobs: List[JobInput]
    apply_rate_limit: bool = True
    config: Optional[CampaignConfig] = None


class CampaignConfigUpdate(BaseModel):
    """Request body for changing rate-limit settings"""
    rpm: Optional[int] = Field(None, ge=0)
    failure_threshold: Optional[float] = Field(None, ge=0, le=100)


def _http_error(e: CampaignError) -> HTTPException:
    if isinstance(e, NotFound):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if isinstance(e, InvalidState):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    if isinstance(e, ValidationError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))


@router.post("/", status_code=status.HTTP_201_CREATED)
async def create_campaign(
    body: CampaignCreate,
    manager: CampaignManager = Depends(get_campaign_manager)
) -> Campaign:
    """Create a campaign and queue all of its jobs"""
    try:
        campaign = await manager.create(
            name=body.name,
            parameter_set_id=body.parameter_set_id,
            jobs=body.jobs,
            config=body.config,
            description=body.description,
            project_id=body.project_id,
            created_by=body.created_by,
            apply_rate_limit=body.apply_rate_limit,
        )
    except CampaignError as e:
        raise _http_error(e)

    logger.info(f"Created campaign {campaign.id} with {campaign.total_jobs} jobs")
    return campaign


@router.get("/")
async def list_campaigns(
    project_id: Optional[str] = Query(None),
    status_filter: Optional[CampaignStatus] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    limit: Optional[int] = Query(None, ge=1, le=200),
    manager: CampaignManager = Depends(get_campaign_manager)
) -> PaginatedCampaigns:
    """List campaigns, newest first"""
    try:
        return await manager.find_all(
            project_id=project_id,
            status=status_filter,
            page=page,
            limit=limit
        )
    except CampaignError as e:
        raise _http_error(e)


@router.get("/worker/status")
async def get_worker_status(
    worker: Optional[AuditWorker] = Depends(get_audit_worker)
):
    """Audit worker pool and queue status"""
    if worker is None:
        return {"running": False, "reason": "worker not configured"}
    return await worker.get_status()


@router.get("/{campaign_id}")
async def get_campaign(
    campaign_id: str,
    manager: CampaignManager = Depends(get_campaign_manager)
) -> Campaign:
    """Get campaign details including per-job status"""
    try:
        return await manager.find_by_id(campaign_id)
    except CampaignError as e:
        raise _http_error(e)


@router.post("/{campaign_id}/jobs")
async def add_job(
    campaign_id: str,
    job: JobInput,
    manager: CampaignManager = Depends(get_campaign_manager)
) -> Campaign:
    """Append one audio file to a campaign"""
    try:
        return await manager.add_job(campaign_id, job)
    except CampaignError as e:
        raise _http_error(e)


@router.put("/{campaign_id}/cancel")
async def cancel_campaign(
    campaign_id: str,
    manager: CampaignManager = Depends(get_campaign_manager)
) -> Campaign:
    """Cancel a campaign. Jobs already running finish."""
    try:
        return await manager.cancel(campaign_id)
    except CampaignError as e:
        raise _http_error(e)


@router.post("/{campaign_id}/pause")
async def pause_campaign(
    campaign_id: str,
    manager: CampaignManager = Depends(get_campaign_manager)
) -> Campaign:
    try:
        return await manager.pause(campaign_id)
    except CampaignError as e:
        raise _http_error(e)


@router.post("/{campaign_id}/resume")
async def resume_campaign(
    campaign_id: str,
    manager: CampaignManager = Depends(get_campaign_manager)
) -> Campaign:
    try:
        return await manager.resume(campaign_id)
    except CampaignError as e:
        raise _http_error(e)


@router.post("/{campaign_id}/retry")
async def retry_failed_jobs(
    campaign_id: str,
    manager: CampaignManager = Depends(get_campaign_manager)
):
    """Re-queue every failed job of a campaign"""
    try:
        retried = await manager.retry(campaign_id)
    except CampaignError as e:
        raise _http_error(e)
    return {"campaign_id": campaign_id, "retried": retried}


@router.post("/{campaign_id}/jobs/{job_index}/retry")
async def retry_job(
    campaign_id: str,
    job_index: int,
    manager: CampaignManager = Depends(get_campaign_manager)
) -> Campaign:
    """Re-queue one failed job"""
    try:
        return await manager.retry_job(campaign_id, job_index)
    except CampaignError as e:
        raise _http_error(e)


@router.patch("/{campaign_id}/config")
async def update_campaign_config(
    campaign_id: str,
    body: CampaignConfigUpdate,
    manager: CampaignManager = Depends(get_campaign_manager)
) -> Campaign:
    """Change rate limit / auto-pause threshold (applies from the next job)"""
    try:
        return await manager.update_config(
            campaign_id,
            rpm=body.rpm,
            failure_threshold=body.failure_threshold
        )
    except CampaignError as e:
        raise _http_error(e)


@router.delete("/{campaign_id}")
async def delete_campaign(
    campaign_id: str,
    manager: CampaignManager = Depends(get_campaign_manager)
):
    try:
        await manager.delete(campaign_id)
    except CampaignError as e:
        raise _http_error(e)
    return {"success": True, "message": "Campaign deleted"}
