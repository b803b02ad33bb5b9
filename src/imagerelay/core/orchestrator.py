"""Prediction orchestration.

:class:`PredictionOrchestrator` drives a generation job through the remote
API::

    submitted -> polling -> succeeded | failed | timed_out

Synchronous families (standard, edge, depth, character) are submitted and
polled until they reach a terminal status. The illustration family is
submitted asynchronously: the job is recorded in the
:class:`~imagerelay.core.result_store.ResultStore` and completed later by a
webhook callback or by a client status request, both of which go through the
store's serialised update path.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any

from .config import RelayConfig
from .errors import (
    InputValidationError,
    NoOutputError,
    PredictionFailed,
    PredictionTimedOut,
    ReplicateError,
)
from .model_families import FamilyRegistry, ReferenceResolver, family_registry
from .prompts import QUALITY_SUFFIX, calculate_dimensions, sanitize_prompt
from .records import (
    GenerationMetadata,
    GenerationResult,
    JobRecord,
    JobStatus,
    UserIdentity,
)
from .replicate_client import TERMINAL_STATUSES, ReplicateClient
from .requests import GenerationRequest, IllustrationRequest
from .result_store import ResultStore
from .usage_log import UsageLog

logger = logging.getLogger(__name__)

FAILED_STATUSES = frozenset({"failed", "canceled"})

NO_OUTPUT_MESSAGE = "No output images received from the model"


def normalize_output(output: Any) -> list[str]:
    """Normalise a prediction's ``output`` to an ordered list of references.

    Accepts a single string, a list of strings, or an object carrying an
    ``image`` or ``images`` field.

    Raises:
        NoOutputError: If nothing usable remains.
    """
    if isinstance(output, str):
        urls = [output]
    elif isinstance(output, list):
        urls = list(output)
    elif isinstance(output, dict) and output.get("image"):
        urls = [output["image"]]
    elif isinstance(output, dict) and isinstance(output.get("images"), list):
        urls = list(output["images"])
    else:
        urls = []

    urls = [url for url in urls if isinstance(url, str) and url]
    if not urls:
        raise NoOutputError(NO_OUTPUT_MESSAGE)
    return urls


def loggable_input(payload: dict[str, Any], limit: int = 100) -> dict[str, Any]:
    """Copy of *payload* with long string values (inline images) truncated."""
    safe = dict(payload)
    for key, value in safe.items():
        if isinstance(value, str) and len(value) > limit:
            safe[key] = f"{value[:50]}... [truncated]"
    return safe


class PredictionOrchestrator:
    """Submit, poll and complete predictions.

    Args:
        replicate: Remote API client.
        resolver: Reference image resolver handed to model families.
        results: Store of asynchronous job records.
        usage_log: Usage log receiving billable completions.
        config: Relay configuration (polling cadence, webhook URL).
        families: Model family registry.
        sleep: Awaitable sleep function, replaceable in tests.
    """

    def __init__(
        self,
        replicate: ReplicateClient,
        resolver: ReferenceResolver,
        results: ResultStore,
        usage_log: UsageLog,
        config: RelayConfig,
        families: FamilyRegistry = family_registry,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.replicate = replicate
        self.resolver = resolver
        self.results = results
        self.usage_log = usage_log
        self.families = families
        self.poll_interval = config.poll_interval_seconds
        self.max_poll_attempts = config.max_poll_attempts
        self.webhook_url = config.webhook_url
        self._sleep = sleep

    async def generate(self, request: GenerationRequest, user: UserIdentity) -> GenerationResult:
        """Run a synchronous generation to completion.

        Args:
            request: Validated request body.
            user: Calling user.

        Returns:
            Output references and normalised metadata.

        Raises:
            InputValidationError: Missing prompt, unknown engine or missing
                family-specific input. Raised before anything is submitted.
            ReplicateError: The prediction could not be created.
            GenerationError: The prediction failed, timed out or produced no
                output.
        """
        started = time.monotonic()

        if not request.prompt:
            raise InputValidationError("Prompt is required")
        family = self.families.get(request.engine_type)
        # Asynchronous families are only reachable through submit_async.
        if family is None or family.asynchronous:
            raise InputValidationError("Valid engine type is required")

        prompt = sanitize_prompt(request.prompt)
        payload = await family.build_input(request, prompt, self.resolver)

        logger.info(
            f"Generating with {family.display_name} ({family.version}) for user {user.id}: "
            f"{loggable_input(payload)}"
        )
        prediction = await self.replicate.create_prediction(family.version, payload)
        prediction = await self.poll(prediction["id"], current=prediction)
        urls = normalize_output(prediction.get("output"))

        elapsed = time.monotonic() - started
        logger.info(f"Image generated successfully in {elapsed:.2f}s ({len(urls)} output(s))")

        aspect_ratio = payload.get("aspect_ratio")
        width, height = calculate_dimensions(aspect_ratio)
        return GenerationResult(
            image_url=urls[0],
            image_urls=urls,
            prediction_id=prediction["id"],
            metadata=GenerationMetadata(
                engine=family.name,
                aspect_ratio=aspect_ratio,
                prompt=prompt,
                width=width,
                height=height,
                generation_time=f"{elapsed:.2f}s",
                settings=family.summarize_settings(payload),
            ),
        )

    async def poll(
        self, prediction_id: str, current: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        """Re-fetch a prediction until it is terminal or the attempt ceiling is hit.

        One fetch is made per ``poll_interval`` seconds, at most
        ``max_poll_attempts`` times. A failed fetch uses up an attempt but
        does not end the loop. No fetch happens once a terminal status has
        been seen, including when *current* is already terminal.

        Args:
            prediction_id: Remote prediction id.
            current: Prediction object returned at submission, if any.

        Returns:
            The succeeded prediction object.

        Raises:
            PredictionFailed: The prediction failed or was canceled.
            PredictionTimedOut: The ceiling was reached first.
        """
        prediction = current or {"id": prediction_id, "status": None}
        attempts = 0

        while (
            prediction.get("status") not in TERMINAL_STATUSES
            and attempts < self.max_poll_attempts
        ):
            await self._sleep(self.poll_interval)
            attempts += 1
            try:
                prediction = await self.replicate.get_prediction(prediction_id)
            except ReplicateError as e:
                logger.error(
                    f"Error polling {prediction_id} "
                    f"(attempt {attempts}/{self.max_poll_attempts}): {e}"
                )
                continue
            logger.debug(
                f"Polling attempt {attempts}/{self.max_poll_attempts}. "
                f"Status: {prediction.get('status')}"
            )

        status = prediction.get("status")
        if status in FAILED_STATUSES:
            reason = prediction.get("error") or "Unknown error"
            logger.error(f"Prediction {prediction_id} {status}: {reason}")
            raise PredictionFailed(prediction_id, reason)
        if status != "succeeded":
            logger.error(f"Prediction {prediction_id} timed out. Last status: {status}")
            raise PredictionTimedOut(prediction_id, attempts, status)

        logger.info(f"Prediction succeeded: {prediction_id}")
        return prediction

    async def submit_async(self, request: IllustrationRequest, user: UserIdentity) -> JobRecord:
        """Submit an illustration job and record it as processing.

        Returns:
            The stored ``processing`` job record.
        """
        if not request.prompt:
            raise InputValidationError("Prompt is required")

        family = self.families.get("illustration")
        generation = GenerationRequest(
            prompt=request.prompt, engine_type=family.name, settings=request.settings
        )
        payload = await family.build_input(
            generation, f"{request.prompt}{QUALITY_SUFFIX}", self.resolver
        )
        if self.webhook_url:
            payload["webhook"] = self.webhook_url

        logger.info(
            f"Submitting {family.display_name} job for user {user.id}: {loggable_input(payload)}"
        )
        prediction = await self.replicate.create_prediction(
            family.version, payload, webhook=self.webhook_url
        )
        prediction_id = prediction["id"]

        return await self.results.update(
            prediction_id, lambda current: JobRecord(id=prediction_id, user=user)
        )

    async def refresh(self, job_id: str) -> JobRecord | None:
        """Return a job, asking the remote API first if it is still processing.

        Returns:
            The current record, or None for unknown (or evicted) jobs.

        Raises:
            ReplicateError: The status fetch failed.
        """
        record = self.results.get(job_id)
        if record is None or record.status is not JobStatus.PROCESSING:
            return record

        prediction = await self.replicate.get_prediction(job_id)
        return await self._apply_prediction(
            job_id, prediction, endpoint="/api/prediction", method="GET"
        )

    async def apply_webhook(self, payload: dict[str, Any]) -> JobRecord | None:
        """Apply a remote status callback.

        Callbacks for jobs this process did not submit are ignored.

        Returns:
            The updated record, or None when the job is unknown.
        """
        prediction_id = payload.get("id")
        if not prediction_id:
            raise InputValidationError("Prediction id is required")

        logger.info(f"Received webhook for prediction {prediction_id}: {payload.get('status')}")
        if prediction_id not in self.results:
            logger.warning(f"No stored result found for prediction: {prediction_id}")
            return None

        return await self._apply_prediction(
            prediction_id, payload, endpoint="/api/replicate-webhook", method="POST"
        )

    async def _apply_prediction(
        self, job_id: str, prediction: dict[str, Any], endpoint: str, method: str
    ) -> JobRecord | None:
        status = prediction.get("status")
        if status not in TERMINAL_STATUSES:
            return self.results.get(job_id)

        update: dict[str, Any] = {"completed_at": time.time()}
        if status == "succeeded":
            try:
                urls = normalize_output(prediction.get("output"))
            except NoOutputError:
                update.update(status=JobStatus.FAILED, error=NO_OUTPUT_MESSAGE)
            else:
                update.update(status=JobStatus.COMPLETED, image_url=urls[0], image_urls=urls)
        else:
            update.update(
                status=JobStatus.FAILED,
                error=prediction.get("error") or "Image generation failed",
            )

        transitioned = False

        def finish(current: JobRecord) -> JobRecord:
            nonlocal transitioned
            if current.is_terminal:
                return current
            transitioned = True
            return current.model_copy(update=update)

        record = await self.results.update(job_id, finish)

        if transitioned and record.status is JobStatus.COMPLETED and record.user is not None:
            await asyncio.to_thread(
                self.usage_log.log_call,
                record.user,
                endpoint,
                method,
                200,
                {"predictionId": job_id},
                {"success": True, "imageUrl": record.image_url},
            )
        return record
