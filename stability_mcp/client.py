"""Async client for the Stability AI REST API.

Every provider endpoint the tools need lives here, so the tool layer stays
provider-agnostic:

- ``generate_image_sd35``, ``remove_background`` and ``control_structure``
  answer synchronously with a base64 image.
- ``upscale_creative`` submits a job and then resolves it with
  ``fetch_generation_result``, polling under a bounded ``PollPolicy``.

All calls send multipart/form-data with ``Accept: application/json`` so images
come back base64-encoded inside JSON.
"""
from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import httpx

from .config import DEFAULT_BASE_URL, PollSettings
from .errors import (
    InvalidParametersError,
    JobTimeoutError,
    ProviderApiError,
    ProviderResponseError,
    UnexpectedStatusError,
)
from .images import mime_type_for
from .models import GenerationRequest, JobHandle

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 120.0

GENERATE_SD3_PATH = "/v2beta/stable-image/generate/sd3"
REMOVE_BACKGROUND_PATH = "/v2beta/stable-image/edit/remove-background"
UPSCALE_CREATIVE_PATH = "/v2beta/stable-image/upscale/creative"
CONTROL_STRUCTURE_PATH = "/v2beta/stable-image/control/structure"
RESULTS_PATH = "/v2beta/results/{id}"


@dataclass(frozen=True)
class PollPolicy:
    """Exponential backoff with jitter for resolving asynchronous jobs.

    The wait before retry ``n`` (1-based) is
    ``min(initial_delay * multiplier ** (n - 1), max_delay)`` plus up to
    ``jitter * delay`` of random extra. ``max_attempts=None`` polls until a
    terminal status.
    """
    initial_delay: float = 10.0
    multiplier: float = 1.5
    max_delay: float = 60.0
    jitter: float = 0.1
    max_attempts: Optional[int] = 60

    @classmethod
    def from_settings(cls, settings: PollSettings) -> "PollPolicy":
        return cls(
            initial_delay=settings.initial_delay,
            max_delay=settings.max_delay,
            jitter=settings.jitter,
            max_attempts=settings.max_attempts,
        )

    def delay_for(self, attempt: int) -> float:
        base = min(self.initial_delay * (self.multiplier ** max(attempt - 1, 0)), self.max_delay)
        if self.jitter <= 0 or base <= 0:
            return base
        return base + random.uniform(0, base * self.jitter)


def _form(fields: Dict[str, Any]) -> Dict[str, Tuple[None, str]]:
    """Encode plain fields as multipart parts, dropping unset values."""
    return {name: (None, str(value)) for name, value in fields.items() if value is not None and value != ""}


def _validation_messages(response: httpx.Response) -> List[str]:
    try:
        data = response.json()
    except ValueError:
        return [response.text]
    errors = data.get("errors") if isinstance(data, dict) else None
    if isinstance(errors, list) and errors:
        return [str(e) for e in errors]
    return [response.text]


def _raise_for_provider_error(response: httpx.Response) -> None:
    """Classify a non-success provider response."""
    if response.status_code == 400:
        raise InvalidParametersError(_validation_messages(response))
    if response.is_error:
        raise ProviderApiError(response.status_code, response.text)


def _json_body(response: httpx.Response) -> Dict[str, Any]:
    try:
        data = response.json()
    except ValueError as exc:
        raise ProviderResponseError(f"Provider returned a non-JSON body: {response.text[:200]}") from exc
    if not isinstance(data, dict):
        raise ProviderResponseError("Provider returned an unexpected JSON payload.")
    return data


class StabilityAiApiClient:
    """Thin async wrapper over the Stability AI v2beta image endpoints."""

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = DEFAULT_TIMEOUT,
        poll_policy: Optional[PollPolicy] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.poll_policy = poll_policy or PollPolicy()
        self._http = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Accept": "application/json",
            },
            transport=transport,
        )

    async def __aenter__(self) -> "StabilityAiApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _post_form(
        self,
        path: str,
        fields: Dict[str, Any],
        image_path: "Path | str | None" = None,
    ) -> Dict[str, Any]:
        files: Dict[str, Any] = _form(fields)
        if image_path is not None:
            path_obj = Path(image_path)
            image_bytes = await asyncio.to_thread(path_obj.read_bytes)
            files["image"] = (path_obj.name, image_bytes, mime_type_for(path_obj) or "application/octet-stream")

        response = await self._http.post(path, files=files)
        _raise_for_provider_error(response)
        return _json_body(response)

    @staticmethod
    def _image_from(data: Dict[str, Any]) -> str:
        if data.get("finish_reason") == "CONTENT_FILTERED":
            logger.warning("Provider flagged the output as filtered content")
        image = data.get("image")
        if not image:
            raise ProviderResponseError("Provider response did not include image data.")
        return image

    async def generate_image_sd35(self, request: GenerationRequest) -> str:
        """Text-to-image with Stable Diffusion 3.5. Returns base64 image data."""
        data = await self._post_form(
            GENERATE_SD3_PATH,
            {
                "prompt": request.prompt,
                "mode": "text-to-image",
                "model": request.model,
                "aspect_ratio": request.aspect_ratio,
                "negative_prompt": request.negative_prompt,
                "cfg_scale": request.cfg_scale,
                "style_preset": request.style_preset,
                "seed": request.seed,
                "output_format": request.output_format,
            },
        )
        return self._image_from(data)

    async def remove_background(self, image_file_path: "Path | str", request: GenerationRequest) -> str:
        """Make the background of an image transparent. Returns base64 image data."""
        data = await self._post_form(
            REMOVE_BACKGROUND_PATH,
            {"output_format": request.output_format},
            image_path=image_file_path,
        )
        return self._image_from(data)

    async def control_structure(self, image_file_path: "Path | str", request: GenerationRequest) -> str:
        """Generate a new image that keeps the structure of the source image."""
        data = await self._post_form(
            CONTROL_STRUCTURE_PATH,
            {
                "prompt": request.prompt,
                "output_format": request.output_format,
                "control_strength": request.control_strength,
                "negative_prompt": request.negative_prompt,
                "seed": request.seed,
            },
            image_path=image_file_path,
        )
        return self._image_from(data)

    async def submit_upscale_creative(self, image_file_path: "Path | str", request: GenerationRequest) -> JobHandle:
        """Start a creative upscale job and return its handle."""
        data = await self._post_form(
            UPSCALE_CREATIVE_PATH,
            {
                "prompt": request.prompt,
                "output_format": request.output_format,
                "negative_prompt": request.negative_prompt,
                "seed": request.seed,
                "creativity": request.creativity,
            },
            image_path=image_file_path,
        )
        job_id = data.get("id")
        if not job_id:
            raise ProviderResponseError("Provider did not return a generation id.")
        logger.info("Submitted creative upscale job %s", job_id)
        return JobHandle(id=str(job_id))

    async def upscale_creative(self, image_file_path: "Path | str", request: GenerationRequest) -> str:
        """Upscale an image, waiting for the asynchronous job to finish."""
        job = await self.submit_upscale_creative(image_file_path, request)
        return await self.fetch_generation_result(job)

    async def fetch_generation_result(self, job: "JobHandle | str") -> str:
        """Poll a job until it completes and return its base64 result.

        200 means complete, 202 means still running (wait and retry), 4xx/5xx
        are classified like any other provider error and anything else is an
        unexpected status. Cancelling the awaiting task stops the loop.
        """
        job_id = job.id if isinstance(job, JobHandle) else job
        policy = self.poll_policy
        attempt = 0
        while True:
            attempt += 1
            response = await self._http.get(
                RESULTS_PATH.format(id=job_id),
                headers={"Accept": "application/json"},
            )
            if response.status_code == 200:
                logger.info("Generation %s completed after %d polls", job_id, attempt)
                result = _json_body(response).get("result")
                if not result:
                    raise ProviderResponseError("Provider response did not include image data.")
                return result
            if response.status_code == 202:
                if policy.max_attempts is not None and attempt >= policy.max_attempts:
                    raise JobTimeoutError(job_id, attempt)
                delay = policy.delay_for(attempt)
                logger.debug("Generation %s in progress (poll %d), retrying in %.1fs", job_id, attempt, delay)
                await asyncio.sleep(delay)
                continue
            _raise_for_provider_error(response)
            raise UnexpectedStatusError(response.status_code)
