"""
Infrastructure layer: grouping service client with retry logic.
"""
from typing import Any, Dict, Optional
import logging

import httpx
from pydantic import ValidationError
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
)

from app.config import settings
from app.domain.models import (
    FormGroupsFromPreviewRequest,
    FormGroupsResponse,
    GroupFormationParams,
    PreviewGroupsResponse,
)
from app.infrastructure.api_constants import APIConstants, GroupingAPIEndpoints

logger = logging.getLogger(__name__)


class ExternalAPIError(Exception):
    """Raised when the grouping service fails or rejects a request."""

    def __init__(self, message: str, status_code: int = 502):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class GroupingServiceClient:
    """
    Client for the grouping service.
    Implements retry logic with exponential backoff.
    """

    def __init__(self, base_url: Optional[str] = None, api_key: Optional[str] = None):
        """Initialize the API client with configuration."""
        self.base_url = base_url or settings.grouping_api_base_url
        self.api_key = api_key if api_key is not None else settings.grouping_api_key
        headers = {"accept": APIConstants.CONTENT_TYPE_JSON}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=settings.grouping_api_timeout,
        )

    async def __aenter__(self) -> "GroupingServiceClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self):
        """Close the HTTP client."""
        await self.client.aclose()

    @retry(
        stop=stop_after_attempt(settings.max_retry_attempts),
        wait=wait_exponential(
            multiplier=settings.retry_backoff_multiplier,
            min=settings.retry_min_wait,
            max=settings.retry_max_wait,
        ),
        retry=retry_if_exception_type((httpx.HTTPStatusError, httpx.RequestError)),
        reraise=True,
    )
    async def _send(self, method: str, endpoint: str, **kwargs) -> Any:
        response = await self.client.request(method, endpoint, **kwargs)
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            # Retry on server errors (5xx)
            if e.response.status_code >= 500:
                logger.warning(f"Grouping service returned {e.response.status_code}, retrying")
                raise
            # Don't retry on client errors (4xx)
            raise ExternalAPIError(
                f"API request failed: {e.response.status_code} - {e.response.text}",
                status_code=e.response.status_code,
            )
        return response.json()

    async def _make_request(
        self,
        method: str,
        endpoint: str,
        **kwargs
    ) -> Dict[str, Any]:
        """
        Make an HTTP request with retry logic.

        Args:
            method: HTTP method (GET, POST, etc.)
            endpoint: API endpoint path
            **kwargs: Additional arguments for the request

        Returns:
            Response data, unwrapped from the Result envelope if present

        Raises:
            ExternalAPIError: If the request fails after retries
        """
        try:
            data = await self._send(method, endpoint, **kwargs)
        except httpx.HTTPStatusError as e:
            logger.error(f"{method} {endpoint} failed after retries: {e.response.status_code}")
            raise ExternalAPIError(
                f"API request failed: {e.response.status_code} - {e.response.text}"
            )
        except httpx.RequestError as e:
            logger.error(f"{method} {endpoint} failed after retries: {e}")
            raise ExternalAPIError(f"API request error: {str(e)}")
        except ValueError as e:
            logger.error(f"{method} {endpoint} returned a body that is not JSON: {e}")
            raise ExternalAPIError(f"Malformed response from grouping service: {e}")
        return self._unwrap_result(data)

    @staticmethod
    def _unwrap_result(data: Any) -> Any:
        """
        Unwrap a ``{succeeded, data, message, errors}`` envelope.

        Bare payloads are returned unchanged.

        Raises:
            ExternalAPIError: If the envelope reports failure
        """
        if not isinstance(data, dict) or APIConstants.RESULT_SUCCEEDED not in data:
            return data
        if not data[APIConstants.RESULT_SUCCEEDED]:
            errors = data.get(APIConstants.RESULT_ERRORS) or []
            message = data.get(APIConstants.RESULT_MESSAGE) or "; ".join(map(str, errors))
            raise ExternalAPIError(message or "Grouping service reported a failure", status_code=400)
        return data.get(APIConstants.RESULT_DATA)

    async def preview_groups(self, params: GroupFormationParams) -> PreviewGroupsResponse:
        """
        Request a grouping preview for a cluster and season.

        Args:
            params: Grouping parameters, sent as query string

        Returns:
            PreviewGroupsResponse instance

        Raises:
            ExternalAPIError: If the request fails or returns no data
        """
        data = await self._make_request(
            "GET",
            GroupingAPIEndpoints.PREVIEW,
            params=params.to_query_params(),
        )
        if data is None:
            raise ExternalAPIError(f"No preview returned for cluster {params.cluster_id}")
        try:
            response = PreviewGroupsResponse.model_validate(data)
        except ValidationError as e:
            raise ExternalAPIError(f"Malformed preview payload: {e.error_count()} invalid field(s)")
        logger.info(
            f"Preview for cluster {params.cluster_id}: {len(response.proposed_groups)} groups, "
            f"{len(response.ungrouped_plots)} ungrouped plots"
        )
        return response

    async def form_groups_from_preview(
        self,
        request: FormGroupsFromPreviewRequest,
    ) -> FormGroupsResponse:
        """
        Create groups from an edited preview.

        Args:
            request: Confirmed groups

        Returns:
            FormGroupsResponse instance

        Raises:
            ExternalAPIError: If the request fails or the reply is malformed
        """
        data = await self._make_request(
            "POST",
            GroupingAPIEndpoints.FORM_FROM_PREVIEW,
            json=request.to_wire(),
        )
        try:
            return FormGroupsResponse.model_validate(data or {})
        except ValidationError as e:
            raise ExternalAPIError(f"Malformed creation response: {e.error_count()} invalid field(s)")


# Singleton instance
_api_client: Optional[GroupingServiceClient] = None


def get_api_client() -> GroupingServiceClient:
    """
    Get or create the singleton API client instance.

    Returns:
        GroupingServiceClient instance
    """
    global _api_client
    if _api_client is None:
        _api_client = GroupingServiceClient()
    return _api_client
