"""
Usage Reporter
Phones completed audit usage home to the central admin panel
"""
import asyncio
import logging
from typing import Optional, Set

import httpx

from app.domain.models.call_audit import AuditReportPayload

logger = logging.getLogger(__name__)


class UsageReporter:
    """
    Fire-and-forget usage reporting.

    Enabled only when both the admin panel URL and the instance API key are
    configured. Failures are logged and never reach the audit pipeline.
    """

    REPORT_PATH = "/api/admin/audit-reports"
    TIMEOUT_SECONDS = 10.0

    def __init__(
        self,
        admin_panel_url: Optional[str] = None,
        api_key: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None
    ):
        self.admin_panel_url = admin_panel_url.rstrip("/") if admin_panel_url else None
        self._api_key = api_key
        self._client = client
        self._owns_client = client is None
        self._pending: Set[asyncio.Task] = set()

        if self.is_enabled():
            logger.info(f"Usage reporter enabled, reporting to: {self.admin_panel_url}")
        else:
            logger.info("Usage reporter disabled (ADMIN_PANEL_URL or INSTANCE_API_KEY not set)")

    def is_enabled(self) -> bool:
        return bool(self.admin_panel_url and self._api_key)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.TIMEOUT_SECONDS)
        return self._client

    async def report_audit(self, payload: AuditReportPayload) -> bool:
        """
        Send one report.

        Returns:
            True if the admin panel accepted it
        """
        if not self.is_enabled():
            return False

        try:
            response = await self._get_client().post(
                f"{self.admin_panel_url}{self.REPORT_PATH}",
                json=payload.model_dump(mode="json", exclude_none=True),
                headers={"X-API-Key": self._api_key},
            )
        except httpx.HTTPError as e:
            logger.warning(f"Failed to report audit {payload.audit_id}: {e}")
            return False

        if response.is_success:
            logger.debug(f"Reported audit {payload.audit_id} to admin panel")
            return True

        logger.warning(
            f"Failed to report audit {payload.audit_id}: "
            f"{response.status_code} - {response.text[:200]}"
        )
        return False

    def report_in_background(self, payload: AuditReportPayload) -> Optional[asyncio.Task]:
        """Schedule a report without waiting for it."""
        if not self.is_enabled():
            return None

        task = asyncio.create_task(self.report_audit(payload))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def close(self) -> None:
        """Flush outstanding reports and close the HTTP client."""
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
