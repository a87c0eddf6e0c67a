# Overview: HTTP client for Replicate image generation; start a prediction and poll it to completion.

"""
Replicate Image Generation Client

FLOW:
1. POST /predictions with the model version and input
2. GET /predictions/{id} every poll_interval seconds until the prediction
   reaches succeeded, failed or canceled
3. Return the output URLs

GUARANTEES:
- generate_image returns a non-empty list of URLs or raises ImageGenerationError
- Polling stops after max_attempts; a request never waits indefinitely
"""
from __future__ import annotations

import logging
import time

import httpx
from flask import current_app


DEFAULT_API_URL = "https://api.replicate.com/v1"
DEFAULT_SDXL_VERSION = "39ed52f2a78e934b3ba6e2a89f5b1c712de7dfea535525255b1aa35c5565e08b"
DEFAULT_TIMEOUT = 30.0

TERMINAL_STATUSES = {"succeeded", "failed", "canceled"}


class ImageGenerationError(Exception):
    """Raised when an image could not be produced."""
    pass


class ReplicateNotConfiguredError(ImageGenerationError):
    """REPLICATE_API_TOKEN is missing."""
    pass


def _output_urls(output) -> list[str]:
    if isinstance(output, str):
        return [output] if output else []
    if isinstance(output, list):
        return [u for u in output if isinstance(u, str) and u]
    return []


class ReplicateClient:
    """
    Synchronous Replicate client.

    sleep and transport are injectable so tests run without waiting or network.
    """

    def __init__(
        self,
        api_token: str | None,
        base_url: str = DEFAULT_API_URL,
        poll_interval: float = 1.0,
        max_attempts: int = 60,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.BaseTransport | None = None,
        sleep=time.sleep,
        logger: logging.Logger | None = None,
    ):
        self.api_token = api_token
        self.base_url = base_url.rstrip("/")
        self.poll_interval = poll_interval
        self.max_attempts = max_attempts
        self.timeout = timeout
        self.transport = transport
        self.sleep = sleep
        self.logger = logger or logging.getLogger(__name__)

    @classmethod
    def from_app(cls, transport: httpx.BaseTransport | None = None, sleep=None) -> "ReplicateClient":
        config = current_app.config
        return cls(
            api_token=config.get("REPLICATE_API_TOKEN"),
            base_url=config.get("REPLICATE_API_URL", DEFAULT_API_URL),
            poll_interval=config.get("REPLICATE_POLL_INTERVAL_SECONDS", 1.0),
            max_attempts=config.get("REPLICATE_MAX_POLL_ATTEMPTS", 60),
            transport=transport or current_app.extensions.get("replicate_transport"),
            sleep=sleep or current_app.extensions.get("replicate_sleep") or time.sleep,
            logger=current_app.logger,
        )

    def is_configured(self) -> bool:
        return bool(self.api_token)

    def _headers(self) -> dict:
        return {
            "Authorization": f"Token {self.api_token}",
            "Content-Type": "application/json",
        }

    def _call(self, client: httpx.Client, method: str, path: str, json: dict | None = None) -> dict:
        try:
            response = client.request(method, f"{self.base_url}{path}", headers=self._headers(), json=json)
        except httpx.HTTPError as e:
            raise ImageGenerationError(f"Could not reach Replicate: {e}") from e

        if response.status_code >= 400:
            try:
                detail = response.json().get("detail")
            except (ValueError, AttributeError):
                detail = None
            raise ImageGenerationError(
                f"Replicate returned HTTP {response.status_code}: {detail or response.text}"
            )
        try:
            return response.json()
        except ValueError as e:
            raise ImageGenerationError("Replicate returned invalid JSON") from e

    def generate_image(
        self,
        prompt: str,
        negative_prompt: str | None = None,
        width: int = 1024,
        height: int = 1024,
        version: str = DEFAULT_SDXL_VERSION,
    ) -> list[str]:
        if not self.is_configured():
            raise ReplicateNotConfiguredError("REPLICATE_API_TOKEN is not configured")
        if not prompt or not prompt.strip():
            raise ImageGenerationError("prompt required")

        body = {
            "version": version,
            "input": {
                "prompt": prompt,
                "negative_prompt": negative_prompt or "",
                "width": width,
                "height": height,
                "num_outputs": 1,
                "scheduler": "K_EULER",
                "num_inference_steps": 50,
                "guidance_scale": 7.5,
            },
        }

        with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
            prediction = self._call(client, "POST", "/predictions", json=body)
            prediction_id = prediction.get("id")
            if not prediction_id:
                raise ImageGenerationError("Replicate did not return a prediction id")

            status = prediction.get("status")
            attempts = 0
            while status not in TERMINAL_STATUSES:
                if attempts >= self.max_attempts:
                    raise ImageGenerationError(
                        f"Prediction {prediction_id} did not finish after {self.max_attempts} polls"
                    )
                self.sleep(self.poll_interval)
                prediction = self._call(client, "GET", f"/predictions/{prediction_id}")
                status = prediction.get("status")
                attempts += 1

        if status != "succeeded":
            error = prediction.get("error") or status
            raise ImageGenerationError(f"Prediction {prediction_id} {status}: {error}")

        urls = _output_urls(prediction.get("output"))
        if not urls:
            raise ImageGenerationError(f"Prediction {prediction_id} succeeded without output")

        self.logger.info("Replicate prediction %s finished after %d polls", prediction_id, attempts)
        return urls
