"""HTTP prediction server client."""

from __future__ import annotations

import time
from typing import Any

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from trade_core import TradeCoreError
from trade_core.ai.schemas import PredictionRequest, PredictionResponse
from trade_core.config import Settings
from trade_core.types import Observation, Position, PredictionDescriptor
from trade_core.utils.logging import get_logger, log_provider_call


# three attempts plus backoff share one provider_timeout_sec budget
_ATTEMPTS = 3


def endpoint_name(endpoint: str) -> str:
    """Provider name unique per host, port and path: `http:host:port/path`."""
    url = httpx.URL(endpoint)
    if not url.host:
        return f"http:{endpoint}"
    port = f":{url.port}" if url.port else ""
    return f"http:{url.host}{port}{url.path.rstrip('/')}"


class PredictionError(TradeCoreError):
    """Base prediction provider error."""


class PredictionAPIError(PredictionError):
    """Raised when API transport/request fails."""


class HttpPredictionProvider:
    """Posts observation + position to a prediction server and validates the reply."""

    def __init__(
        self,
        settings: Settings,
        endpoint: str,
        *,
        name: str | None = None,
        weight: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._endpoint = endpoint
        self._transport = transport
        self.name = name or endpoint_name(endpoint)
        self.weight = settings.prediction_weight if weight is None else weight
        self._logger = get_logger("trade_core.ai.http_client")

    @property
    def available(self) -> bool:
        return bool(self._endpoint)

    @property
    def attempt_timeout_sec(self) -> float:
        # one share is left for the backoff waits between attempts
        return self._settings.provider_timeout_sec / (_ATTEMPTS + 1)

    async def predict(
        self,
        observation: Observation,
        position: Position,
    ) -> PredictionDescriptor | None:
        """Return one validated forecast, or None for an invalid reply."""
        started = time.perf_counter()
        request = PredictionRequest.build(observation, position)
        try:
            content = await self._request_prediction(request)
        except PredictionAPIError:
            elapsed_ms = (time.perf_counter() - started) * 1000
            log_provider_call(
                self._logger,
                provider=self.name,
                success=False,
                latency_ms=elapsed_ms,
                reason="api_error",
            )
            raise

        response = PredictionResponse.parse_strict(content)
        elapsed_ms = (time.perf_counter() - started) * 1000
        log_provider_call(
            self._logger,
            provider=self.name,
            success=response is not None,
            latency_ms=elapsed_ms,
            direction=response.direction if response else None,
        )
        return response.to_descriptor(self.name) if response else None

    @retry(
        retry=retry_if_exception_type(PredictionAPIError),
        wait=wait_exponential(multiplier=0.1, min=0.1, max=1),
        stop=stop_after_attempt(_ATTEMPTS),
        reraise=True,
    )
    async def _request_prediction(self, request: PredictionRequest) -> Any:
        headers = {"Content-Type": "application/json"}
        if self._settings.prediction_api_key:
            headers["Authorization"] = f"Bearer {self._settings.prediction_api_key}"

        try:
            async with httpx.AsyncClient(
                timeout=self.attempt_timeout_sec,
                transport=self._transport,
            ) as client:
                response = await client.post(
                    self._endpoint,
                    headers=headers,
                    json=request.model_dump(mode="json"),
                )
                response.raise_for_status()
        except httpx.HTTPError as exc:
            raise PredictionAPIError(str(exc)) from exc

        try:
            return response.json()
        except ValueError:
            return None
