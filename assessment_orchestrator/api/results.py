"""Final result retrieval with archive fallback."""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Optional

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from assessment_orchestrator.api.client import AssessmentApiClient
from assessment_orchestrator.config.settings import ResultFetchConfig
from assessment_orchestrator.errors import NotFound, ServerError
from assessment_orchestrator.models import MalformedEvent, ResultDocument
from assessment_orchestrator.utils.logging import get_logger

logger = get_logger("api.results")


class ResultFetcher:
    """
    Resolves the result document of a completed job.

    The primary results endpoint is tried first; a 404 or 5xx there falls
    back to the archive endpoint. A job can report completion before its
    document is readable, so when neither endpoint has it the pair is tried
    again with capped exponential backoff, up to ``config.max_attempts``
    rounds. Documents are cached per result id, and concurrent calls for
    the same id share a single request.
    """

    def __init__(
        self,
        api: AssessmentApiClient,
        config: Optional[ResultFetchConfig] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.api = api
        self.config = config or ResultFetchConfig()
        self._sleep = sleep
        self._cache: dict[str, ResultDocument] = {}
        self._inflight: dict[str, asyncio.Future] = {}

    def cached(self, result_id: str) -> Optional[ResultDocument]:
        return self._cache.get(result_id)

    def invalidate(self, result_id: str) -> None:
        self._cache.pop(result_id, None)

    async def fetch(self, result_id: str) -> ResultDocument:
        """
        Fetch the result document for ``result_id``.

        Raises:
            NotFound: If neither endpoint has the document after every round
            NetworkError: If the service cannot be reached
        """
        cached = self._cache.get(result_id)
        if cached is not None:
            logger.debug("result_cache_hit", result_id=result_id)
            return cached

        inflight = self._inflight.get(result_id)
        if inflight is not None:
            return await asyncio.shield(inflight)

        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._inflight[result_id] = future
        try:
            document = await self._fetch_uncached(result_id)
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            future.set_exception(e)
            # Mark retrieved so an unawaited future does not log a warning
            future.exception()
            raise
        else:
            self._cache[result_id] = document
            future.set_result(document)
            return document
        finally:
            self._inflight.pop(result_id, None)

    async def _fetch_uncached(self, result_id: str) -> ResultDocument:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.config.max_attempts),
            wait=wait_exponential(
                multiplier=self.config.initial_delay,
                max=self.config.max_delay,
            ),
            retry=retry_if_exception_type(NotFound),
            before_sleep=_log_not_ready,
            sleep=self._sleep,
            reraise=True,
        )
        try:
            body, source = await retrying(self._lookup, result_id)
        except NotFound as e:
            logger.error(
                "result_not_found",
                result_id=result_id,
                attempts=self.config.max_attempts,
            )
            raise NotFound(
                f"Result {result_id} is still not available after "
                f"{self.config.max_attempts} attempts. Please check your results page later.",
                status_code=e.status_code,
            ) from e

        try:
            document = ResultDocument.from_dict(body)
        except MalformedEvent as e:
            raise NotFound(f"Result {result_id} returned an unreadable document") from e

        logger.info("result_fetched", result_id=result_id, source=source)
        return document

    async def _lookup(self, result_id: str) -> tuple[Any, str]:
        """One round: primary endpoint, then archive."""
        try:
            return await self.api.get_result(result_id), "primary"
        except (NotFound, ServerError) as e:
            logger.debug(
                "result_primary_unavailable",
                result_id=result_id,
                error=e.kind.value,
                status_code=e.status_code,
            )

        try:
            return await self.api.get_archived_result(result_id), "archive"
        except ServerError as e:
            raise NotFound(f"Result {result_id} is not available yet", status_code=e.status_code) from e


def _log_not_ready(retry_state: RetryCallState) -> None:
    logger.warning(
        "result_not_ready",
        result_id=retry_state.args[0],
        attempt=retry_state.attempt_number,
        delay=retry_state.next_action.sleep,
    )
