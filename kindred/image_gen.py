"""
Image generation gateway.

Talks to any OpenAI-compatible `POST {base_url}/images/generations` endpoint.
Only called after the user confirms a pending ImageGenCommand.

Retries transient failures (network, 5xx, 429) up to `max_retries` times;
configuration errors (missing endpoint, 401/403/404) fail at once.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Optional

import requests

from kindred.errors import ImageGenError
from kindred.models import ImageGenCommand

logger = logging.getLogger(__name__)

RETRY_BACKOFF_SECONDS = 1.0
NON_RETRYABLE_STATUS = {400, 401, 403, 404, 422}


class ImageGenNotConfigured(ImageGenError):
    pass


class ImageGenGateway(ABC):
    @abstractmethod
    async def generate(self, command: ImageGenCommand) -> str:
        """
        Returns:
            URL (or data URL) of the generated picture

        Raises:
            ImageGenError
        """
        pass


class HttpImageGenGateway(ImageGenGateway):
    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        model: str = "",
        timeout_seconds: float = 60.0,
        max_retries: int = 2,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = (base_url or "").rstrip("/")
        self.api_key = api_key
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.max_retries = max_retries
        self._session = session or requests.Session()

    @classmethod
    def from_config(cls, config) -> "HttpImageGenGateway":
        return cls(
            base_url=config.get("image_gen.url", ""),
            api_key=config.get("image_gen.api_key", ""),
            model=config.get("image_gen.model", ""),
            timeout_seconds=float(config.get("image_gen.timeout_seconds", 60)),
        )

    @property
    def configured(self) -> bool:
        return bool(self.base_url)

    def _post_once(self, command: ImageGenCommand) -> str:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        body = {"prompt": command.prompt, "size": command.size, "n": 1}
        if self.model:
            body["model"] = self.model

        response = self._session.post(
            f"{self.base_url}/images/generations",
            json=body,
            headers=headers,
            timeout=self.timeout_seconds,
        )
        if response.status_code in NON_RETRYABLE_STATUS:
            raise ImageGenNotConfigured(f"image endpoint rejected request ({response.status_code})")
        response.raise_for_status()

        payload = response.json()
        if payload.get("error"):
            raise ImageGenError(f"image endpoint error: {payload['error'].get('message', 'unknown')}")
        for item in payload.get("data") or []:
            if item.get("url"):
                return item["url"]
            if item.get("b64_json"):
                return f"data:image/png;base64,{item['b64_json']}"
        raise ImageGenError("no image in response")

    def generate_sync(self, command: ImageGenCommand) -> str:
        if not self.configured:
            raise ImageGenNotConfigured("image generation endpoint is not configured")

        last_error: Optional[Exception] = None
        for attempt in range(self.max_retries + 1):
            try:
                url = self._post_once(command)
                logger.info(f"[IMAGE] Generated {command.size} picture (attempt {attempt + 1})")
                return url
            except ImageGenNotConfigured:
                raise
            except (requests.RequestException, ValueError, ImageGenError) as e:
                last_error = e
                logger.warning(f"[IMAGE] Attempt {attempt + 1} failed: {e}")
                if attempt < self.max_retries:
                    time.sleep(RETRY_BACKOFF_SECONDS * (attempt + 1))
        raise ImageGenError(f"image generation failed: {last_error}") from last_error

    async def generate(self, command: ImageGenCommand) -> str:
        return await asyncio.to_thread(self.generate_sync, command)
