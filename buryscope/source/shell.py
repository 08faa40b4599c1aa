"""
Remote Analytics Source - I/O Operations

HTTP client for the vendor bury-point search endpoint.
"""

import logging
from typing import Optional

import httpx
from opentelemetry import trace

from .contracts import (
    SEARCH_PATH,
    AuthFailure,
    NetworkFailure,
    SearchPage,
    SearchRequest,
    SourceApplicationError,
)
from .core import (
    build_search_body,
    envelope_errors,
    is_auth_failure,
    normalize_code,
    page_from_payload,
)

logger = logging.getLogger(__name__)
tracer = trace.get_tracer("buryscope.source")


class BuryPointSourceClient:
    """
    Client for the vendor search API.

    Every call maps failures onto the source error taxonomy: transport
    problems and timeouts become ``NetworkFailure``, rejected tokens become
    ``AuthFailure`` and any other non-200 envelope becomes
    ``SourceApplicationError``.
    """

    def __init__(
        self,
        base_url: str,
        access_token: Optional[str],
        http_client: Optional[httpx.AsyncClient] = None,
        default_timeout: float = 30.0
    ):
        self.base_url = base_url.rstrip("/")
        self.access_token = access_token
        self.default_timeout = default_timeout
        self._owns_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(timeout=default_timeout)

    async def aclose(self) -> None:
        if self._owns_client:
            await self.http_client.aclose()

    async def search_page(
        self,
        request: SearchRequest,
        timeout: Optional[float] = None
    ) -> SearchPage:
        """
        Fetch one page of raw records.

        Raises:
            NetworkFailure: transport error or timeout
            AuthFailure: token missing or rejected
            SourceApplicationError: vendor-level failure or malformed response
        """
        if not self.access_token:
            raise AuthFailure("No access token configured", request)

        headers = {
            "access-token": self.access_token,
            "Content-Type": "application/json",
            "Accept": "*/*",
        }

        with tracer.start_as_current_span("source.search_page") as span:
            span.set_attributes({
                "tracking_point_id": request.tracking_point_id,
                "day": request.day.isoformat(),
                "page": request.page,
            })

            try:
                response = await self.http_client.post(
                    f"{self.base_url}{SEARCH_PATH}",
                    json=build_search_body(request),
                    headers=headers,
                    timeout=timeout or self.default_timeout,
                )
            except httpx.TimeoutException as e:
                raise NetworkFailure(f"Source timed out: {e}", request) from e
            except httpx.TransportError as e:
                raise NetworkFailure(f"Source unreachable: {e}", request) from e

            try:
                payload = response.json()
            except ValueError:
                payload = None

            code = normalize_code(payload.get("code")) if isinstance(payload, dict) else -1

            if is_auth_failure(response.status_code, code):
                raise AuthFailure(
                    f"Access token rejected (http {response.status_code}, code {code})", request
                )

            if response.status_code >= 500:
                raise NetworkFailure(f"Source returned http {response.status_code}", request)

            if payload is None or envelope_errors(payload):
                raise SourceApplicationError(
                    f"Malformed response envelope (http {response.status_code})",
                    code=None,
                    request=request,
                )

            if code != 200:
                raise SourceApplicationError(
                    f"Source rejected request: code {code} {payload.get('msg') or ''}".rstrip(),
                    code=code,
                    request=request,
                )

            page = page_from_payload(request, payload)
            span.set_attribute("records", len(page.records))

            logger.debug(
                f"Fetched page {request.page} for point {request.tracking_point_id} "
                f"on {request.day}: {len(page.records)} records"
            )
            return page
