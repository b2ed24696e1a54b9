import asyncio
import math
from datetime import timezone
from email.utils import parsedate_to_datetime
from typing import Any, Optional

import httpx

from payment_hub.config import Settings
from payment_hub.errors import TransportError, UnrecognizedResponseShapeError
from payment_hub.helpers import utcnow
from payment_hub.logging_config import get_logger

logger = get_logger(__name__)


def retry_after_seconds(value: Optional[str], default: float) -> float:
    """
    Seconds to wait according to a Retry-After header, given either as
    delay-seconds or as an HTTP-date. Unreadable values fall back to ``default``.
    """
    if not value:
        return default
    try:
        seconds = float(value)
    except ValueError:
        seconds = None
    if seconds is not None:
        return max(seconds, 0.0) if math.isfinite(seconds) else default
    try:
        retry_at = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return default
    if retry_at is None:
        return default
    if retry_at.tzinfo is None:
        retry_at = retry_at.replace(tzinfo=timezone.utc)
    return max((retry_at - utcnow()).total_seconds(), 0.0)


class ProcessorClient:
    """
    JSON-over-POST transport for the processor's REST API.

    Every request carries the credential pair. Only requests sent with
    ``retry=True`` are repeated on 429/5xx, so invoice creation goes out once.
    """

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings
        self.client = httpx.AsyncClient(timeout=settings.request_timeout_seconds, transport=transport)
        self.max_retries = settings.max_retries
        self.retry_backoff_seconds = settings.retry_backoff_seconds

    def _with_credentials(self, payload: dict) -> dict:
        return {
            "public_key": self.settings.public_key,
            "private_key": self.settings.private_key,
            **payload,
        }

    async def _request_with_retry(self, url: str, json: dict, retry: bool) -> httpx.Response:
        retries = 0
        backoff = self.retry_backoff_seconds
        max_retries = self.max_retries if retry else 0
        while True:
            try:
                response = await self.client.post(url, json=json)
            except httpx.TimeoutException as exc:
                raise TransportError(f"processor request timed out: {exc}") from exc
            except httpx.RequestError as exc:
                raise TransportError(f"processor request error: {exc}") from exc
            if retries < max_retries and (response.status_code == 429 or response.status_code >= 500):
                wait = retry_after_seconds(response.headers.get("Retry-After"), backoff)
                logger.warning(
                    "Processor answered status=%s url=%s retry=%s wait=%s",
                    response.status_code,
                    url,
                    retries + 1,
                    wait,
                )
                await asyncio.sleep(wait)
                retries += 1
                backoff *= 2
                continue
            return response

    async def post(self, endpoint: str, payload: dict, retry: bool = False) -> Any:
        """
        POST ``payload`` to ``endpoint`` and return the decoded JSON body.
        """
        url = self.settings.processor_url(endpoint)
        response = await self._request_with_retry(url, self._with_credentials(payload), retry)
        if not response.is_success:
            raise TransportError(
                f"processor returned status {response.status_code} for {endpoint}",
                raw=response.text[:500],
            )
        try:
            return response.json()
        except ValueError as exc:
            raise UnrecognizedResponseShapeError(
                f"processor returned a non-JSON body for {endpoint}",
                raw=response.text[:500],
            ) from exc

    async def aclose(self) -> None:
        await self.client.aclose()
