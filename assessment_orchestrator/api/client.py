"""HTTP client for the assessment service."""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Optional, Union

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from assessment_orchestrator.config.settings import ApiConfig, RetryConfig
from assessment_orchestrator.errors import (
    AssessmentError,
    AuthError,
    InsufficientTokens,
    NetworkError,
    NotFound,
    ServerError,
    ValidationError,
)
from assessment_orchestrator.models import JobStatus, MalformedEvent, SubmitReceipt
from assessment_orchestrator.utils.logging import get_logger

logger = get_logger("api.client")

TokenProvider = Callable[[], Union[Optional[str], Awaitable[Optional[str]]]]


def _unwrap(body: Any) -> Any:
    """Strip the ``{success, data}`` envelope some endpoints use."""
    if isinstance(body, dict) and "data" in body and isinstance(body["data"], dict):
        return body["data"]
    return body


def _error_message(response: httpx.Response) -> Optional[str]:
    try:
        body = response.json()
    except ValueError:
        text = response.text.strip()
        return text[:200] or None
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict):
            return error.get("message") or body.get("message")
        return body.get("message") or (error if isinstance(error, str) else None)
    return None


def raise_for_status(response: httpx.Response) -> None:
    """
    Map an HTTP error response onto the error taxonomy.

    Raises:
        AssessmentError subclass for any non-2xx status
    """
    status = response.status_code
    if status < 400:
        return

    detail = _error_message(response)

    if status == 400:
        raise ValidationError(
            detail or "Invalid assessment data. Please check your answers and try again.",
            status_code=status,
        )
    if status in (401, 403):
        raise AuthError(
            None if status == 401 else "Access denied. Please check your permissions.",
            status_code=status,
        )
    if status == 402:
        raise InsufficientTokens(status_code=status)
    if status == 404:
        raise NotFound(detail, status_code=status)
    if status == 429:
        raise ServerError(
            "Too many requests. Please wait a moment and try again.",
            status_code=status,
        )
    if status >= 500:
        raise ServerError(status_code=status)
    raise AssessmentError(detail or f"HTTP {status}", status_code=status)


def _log_request_retry(retry_state: RetryCallState) -> None:
    error = retry_state.outcome.exception()
    logger.warning(
        "request_retry",
        path=retry_state.args[1],
        attempt=retry_state.attempt_number,
        error=error.kind.value,
        delay=retry_state.next_action.sleep,
    )


class AssessmentApiClient:
    """
    Async client for submit, status, result and health endpoints.

    Result lookups are idempotent GETs and retry transient failures with
    exponential backoff. Submission and status requests never retry here:
    a repeated POST could create a second job, and the polling loop owns
    its own retry budget for status reads.
    """

    def __init__(
        self,
        config: Optional[ApiConfig] = None,
        token_provider: Optional[TokenProvider] = None,
        retry: Optional[RetryConfig] = None,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """
        Initialize the client.

        Args:
            config: Endpoint configuration
            token_provider: Returns the bearer credential (sync or async)
            retry: Backoff settings for result lookups
            timeout: Per-request timeout in seconds
            client: Pre-built httpx client (tests pass a MockTransport one)
            sleep: Backoff sleep function
        """
        self.config = config or ApiConfig()
        self.token_provider = token_provider
        self.retry = retry or RetryConfig()
        self.timeout = timeout
        self._sleep = sleep
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=self.config.base_url,
            timeout=timeout,
            headers={"User-Agent": self.config.user_agent},
        )

    async def __aenter__(self) -> "AssessmentApiClient":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def get_token(self) -> Optional[str]:
        """Resolve the current credential, if any."""
        if self.token_provider is None:
            return None
        token = self.token_provider()
        if asyncio.iscoroutine(token) or isinstance(token, asyncio.Future):
            token = await token
        return token or None

    async def _headers(self, require_auth: bool = True) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        token = await self.get_token()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        elif require_auth:
            raise AuthError("No credential available. Please login again.")
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        json_body: Optional[dict[str, Any]] = None,
        require_auth: bool = True,
    ) -> Any:
        headers = await self._headers(require_auth)
        try:
            response = await self._client.request(
                method,
                path,
                json=json_body,
                headers=headers,
                timeout=self.timeout,
            )
        except httpx.TimeoutException as e:
            raise NetworkError("Request timeout. Please try again.") from e
        except httpx.TransportError as e:
            raise NetworkError(details={"cause": str(e)}) from e

        raise_for_status(response)

        try:
            return _unwrap(response.json())
        except ValueError as e:
            raise ServerError(
                "Invalid JSON response from server",
                status_code=response.status_code,
            ) from e

    async def _get_with_retry(self, path: str) -> Any:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.retry.max_attempts),
            wait=wait_exponential(
                multiplier=self.retry.initial_delay,
                exp_base=self.retry.backoff_factor,
                max=self.retry.max_backoff,
            ),
            retry=retry_if_exception_type((NetworkError, ServerError)),
            before_sleep=_log_request_retry,
            sleep=self._sleep,
            reraise=True,
        )
        return await retrying(self._request, "GET", path)

    async def submit(self, payload: dict[str, Any]) -> SubmitReceipt:
        """
        Submit an assessment for analysis.

        Args:
            payload: ``{assessmentName, riasec, ocean, viaIs}``

        Returns:
            SubmitReceipt with the new job id

        Raises:
            InsufficientTokens, AuthError, ValidationError, ServerError, NetworkError
        """
        body = await self._request("POST", self.config.submit_path, json_body=payload)
        if isinstance(body, dict) and body.get("success") is False:
            raise ServerError(body.get("message") or "Assessment submission failed")
        try:
            receipt = SubmitReceipt.from_dict(body if isinstance(body, dict) else {})
        except MalformedEvent as e:
            raise ServerError("Response missing required job ID") from e

        logger.info(
            "assessment_submitted",
            job_id=receipt.job_id,
            queue_position=receipt.queue_position,
            remaining_tokens=receipt.remaining_tokens,
        )
        return receipt

    async def get_status(self, job_id: str) -> JobStatus:
        """
        Read the current status of a job.

        Raises:
            NotFound, AuthError, ServerError, NetworkError
        """
        path = self.config.status_path.format(job_id=job_id)
        body = await self._request("GET", path)
        try:
            return JobStatus.from_dict(body, job_id=job_id)
        except MalformedEvent as e:
            raise ServerError(f"Unrecognized status response: {e}") from e

    async def get_result(self, result_id: str) -> dict[str, Any]:
        """Fetch a result document from the primary endpoint."""
        return await self._get_with_retry(self.config.result_path.format(result_id=result_id))

    async def get_archived_result(self, result_id: str) -> dict[str, Any]:
        """Fetch a result document from the archive endpoint."""
        return await self._get_with_retry(self.config.archive_path.format(result_id=result_id))

    async def check_health(self) -> dict[str, Any]:
        """
        Query the service health endpoint.

        Returns:
            Parsed health body, or ``{"status": "unhealthy", ...}`` on failure
        """
        try:
            body = await self._request("GET", self.config.health_path, require_auth=False)
        except AssessmentError as e:
            logger.warning("health_check_failed", error=e.kind.value, message=e.message)
            return {"status": "unhealthy", "error": e.to_dict()}
        return body if isinstance(body, dict) else {"status": "healthy"}
