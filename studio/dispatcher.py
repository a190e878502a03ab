import asyncio
import logging
import random
import time
from typing import Optional

import httpx
from pydantic import BaseModel

from . import metrics

logger = logging.getLogger(__name__)

# ── Retry configuration ──────────────────────────────────────────────────────
MAX_RETRIES = 3
BASE_DELAY = 1.0       # seconds — doubles each retry: 1, 2, 4
JITTER_MAX = 0.5        # random jitter 0–0.5s added to each delay
RETRYABLE_STATUS_CODES = {429, 502, 503, 504}


class DispatchResult(BaseModel):
    success: bool
    error: Optional[str] = None


class GenerationDispatcher:
    """
    Sends generation requests to the trigger-generation endpoint.

    The endpoint answers synchronously with accept/reject only; completion is
    observed later by polling the stage record. Credits are debited (and
    refunded on failure) on the server side.

    Usage:
        dispatcher = GenerationDispatcher(endpoint_url, api_key)
        result = await dispatcher.dispatch("pipeline_script", payload)
    """

    def __init__(
        self,
        endpoint_url: str,
        api_key: str = "",
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
        max_retries: int = MAX_RETRIES,
        base_delay: float = BASE_DELAY,
    ):
        self.endpoint_url = endpoint_url
        self.api_key = api_key
        self.max_retries = max_retries
        self.base_delay = base_delay
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    async def aclose(self):
        if self._owns_client:
            await self._client.aclose()

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
            headers["x-api-key"] = self.api_key
        return headers

    def _delay(self, attempt: int, response: Optional[httpx.Response] = None) -> float:
        if response is not None:
            retry_after = response.headers.get("Retry-After")
            if retry_after and retry_after.isdigit():
                return int(retry_after)
        return self.base_delay * (2 ** attempt) + random.uniform(0, JITTER_MAX)

    async def _post_with_backoff(self, body: dict) -> httpx.Response:
        """
        POST with exponential backoff on retryable errors (429, 5xx) and
        transport failures. Returns the last response; raises only
        httpx.TransportError once retries are exhausted.
        """
        for attempt in range(self.max_retries + 1):
            try:
                response = await self._client.post(
                    self.endpoint_url, json=body, headers=self._headers()
                )
            except httpx.TransportError as e:
                if attempt >= self.max_retries:
                    raise
                delay = self._delay(attempt)
                logger.warning(
                    f"Dispatch request error on attempt {attempt + 1}/{self.max_retries + 1}: {e} "
                    f"— retrying in {delay:.1f}s"
                )
                await asyncio.sleep(delay)
                continue

            if response.status_code not in RETRYABLE_STATUS_CODES or attempt >= self.max_retries:
                return response

            delay = self._delay(attempt, response)
            logger.warning(
                f"Dispatch {response.status_code} on attempt {attempt + 1}/{self.max_retries + 1} "
                f"— retrying in {delay:.1f}s"
            )
            await asyncio.sleep(delay)

        raise RuntimeError("unreachable")

    async def dispatch(self, kind: str, payload: dict) -> DispatchResult:
        """
        Submit one generation job.

        Never raises for backend or network problems: those come back as
        DispatchResult(success=False, error=...).
        """
        started = time.time()
        metrics.inc_counter("requests.dispatch")
        logger.info(f"Dispatching {kind} for pipeline {payload.get('pipeline_id')} (cost={payload.get('credits_cost')})")

        try:
            response = await self._post_with_backoff({"type": kind, "payload": payload})
        except httpx.TransportError as e:
            logger.error(f"Dispatch of {kind} failed after retries: {e}")
            metrics.record_error("dispatch", "network", str(e), payload.get("file_id", ""))
            return DispatchResult(success=False, error="Network error")
        finally:
            metrics.record_latency("dispatch", (time.time() - started) * 1000)

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        if response.is_error or not data.get("success"):
            error = data.get("error") or f"Generation service error ({response.status_code})"
            logger.warning(f"Dispatch of {kind} rejected: {error}")
            metrics.inc_counter("errors.dispatch_rejected")
            metrics.record_error("dispatch", "rejected", error, payload.get("file_id", ""))
            return DispatchResult(success=False, error=error)

        metrics.inc_counter("dispatch.accepted")
        return DispatchResult(success=True)
