"""Thin async client for the Replicate predictions API."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from .config import RelayConfig
from .errors import ReplicateError

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = frozenset({"succeeded", "failed", "canceled"})


class ReplicateClient:
    """Submit and fetch predictions over the Replicate REST API.

    Args:
        client: Shared async HTTP client.
        config: Relay configuration providing the token, base URL and timeout.
    """

    def __init__(self, client: httpx.AsyncClient, config: RelayConfig) -> None:
        self.client = client
        self.base_url = config.replicate_api_base.rstrip("/")
        self.timeout = config.replicate_timeout_seconds
        self._headers = {
            "Authorization": f"Bearer {config.replicate_api_token}",
            "Content-Type": "application/json",
        }

    async def create_prediction(
        self,
        version: str,
        input: dict[str, Any],
        webhook: str | None = None,
    ) -> dict[str, Any]:
        """Create a prediction and return the initial prediction object.

        Args:
            version: Model version hash.
            input: Model input payload.
            webhook: Optional callback URL for terminal status updates.

        Raises:
            ReplicateError: On transport errors or non-2xx responses.
        """
        body: dict[str, Any] = {"version": version, "input": input}
        if webhook:
            body["webhook"] = webhook
            body["webhook_events_filter"] = ["completed"]

        prediction = await self._request("POST", "/predictions", json=body)
        logger.info(
            f"Prediction created with ID: {prediction.get('id')} "
            f"(status {prediction.get('status')})"
        )
        return prediction

    async def get_prediction(self, prediction_id: str) -> dict[str, Any]:
        """Fetch the current state of a prediction.

        Raises:
            ReplicateError: On transport errors or non-2xx responses.
        """
        return await self._request("GET", f"/predictions/{prediction_id}")

    async def _request(self, method: str, path: str, **kwargs) -> dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            response = await self.client.request(
                method, url, headers=self._headers, timeout=self.timeout, **kwargs
            )
        except httpx.HTTPError as e:
            raise ReplicateError(f"{method} {path} failed: {e}") from e

        if response.status_code >= 400:
            try:
                body = response.json()
            except ValueError:
                body = None
            detail = body.get("detail", response.text) if isinstance(body, dict) else response.text
            raise ReplicateError(
                f"{method} {path} returned {response.status_code}: {detail}",
                status_code=response.status_code,
            )

        try:
            return response.json()
        except ValueError as e:
            raise ReplicateError(f"{method} {path} returned invalid JSON") from e
