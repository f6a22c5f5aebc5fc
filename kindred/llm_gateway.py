"""
LLM Gateway Module

Responsibility: Send an ordered message list, yield the reply as it grows.

Contract:
- stream_chat() is an async iterator of the FULL accumulated text (not deltas).
- The iterator ends when generation completes.
- Any failure surfaces once, as LLMGatewayError with a coarse `kind`
  (network | timeout | service), and ends the iteration.
- Timeouts are the gateway's business; the caller never times out a stream.

The route picks the model: TEXT -> chat model, VISION -> vision model.
"""

import asyncio
import base64
import logging
import time
from abc import ABC, abstractmethod
from typing import AsyncIterator, List, Optional, Sequence

import ollama
import requests

from kindred.errors import LLMGatewayError
from kindred.message_builder import Message, RouteHint

logger = logging.getLogger(__name__)


def classify_error(exc: BaseException) -> str:
    """Map a transport/library exception to network | timeout | service."""
    if isinstance(exc, LLMGatewayError):
        return exc.kind
    name = type(exc).__name__.lower()
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)) or "timeout" in name:
        return "timeout"
    if isinstance(exc, (ConnectionError, OSError)) or "connect" in name or "network" in name:
        return "network"
    return "service"


class LLMGateway(ABC):
    @abstractmethod
    def stream_chat(self, messages: Sequence[Message], route: RouteHint) -> AsyncIterator[str]:
        """
        Yields:
            The accumulated reply text so far

        Raises:
            LLMGatewayError: once, on any upstream failure
        """
        pass


def _data_url_payload(url: str) -> str:
    """'data:image/jpeg;base64,AAAA' -> 'AAAA'."""
    _, _, payload = url.partition(",")
    return payload


def _fetch_image_b64(url: str, timeout: float = 15.0) -> str:
    response = requests.get(url, timeout=timeout)
    response.raise_for_status()
    return base64.b64encode(response.content).decode("ascii")


class OllamaGateway(LLMGateway):
    """Streaming chat against a local Ollama server."""

    def __init__(
        self,
        host: str = "http://127.0.0.1:11434",
        chat_model: str = "qwen2.5:7b",
        vision_model: str = "llava:7b",
        temperature: float = 0.8,
        keep_alive: Optional[str] = "10m",
        client=None,
    ):
        self.host = host
        self.chat_model = chat_model
        self.vision_model = vision_model
        self.temperature = temperature
        self.keep_alive = keep_alive
        self._client = client or ollama.AsyncClient(host=host)

    @classmethod
    def from_config(cls, config) -> "OllamaGateway":
        return cls(
            host=config.get("llm.host"),
            chat_model=config.get("llm.chat_model"),
            vision_model=config.get("llm.vision_model"),
            temperature=float(config.get("llm.temperature", 0.8)),
            keep_alive=config.get("llm.keep_alive"),
        )

    def model_for(self, route: RouteHint) -> str:
        return self.vision_model if route is RouteHint.VISION else self.chat_model

    async def _image_payloads(self, urls: List[str]) -> List[str]:
        payloads = []
        for url in urls:
            if url.startswith("data:"):
                payloads.append(_data_url_payload(url))
            elif url.startswith(("http://", "https://")):
                payloads.append(await asyncio.to_thread(_fetch_image_b64, url))
            else:
                # Local path; the client reads and encodes it
                payloads.append(url)
        return payloads

    async def to_ollama(self, messages: Sequence[Message]) -> List[dict]:
        converted = []
        for message in messages:
            entry = {"role": message.role, "content": message.text}
            if message.is_multimodal and message.image_urls:
                entry["images"] = await self._image_payloads(message.image_urls)
            converted.append(entry)
        return converted

    async def stream_chat(self, messages: Sequence[Message], route: RouteHint) -> AsyncIterator[str]:
        model = self.model_for(route)
        accumulated = ""
        start = time.perf_counter()
        first_token_ms = None
        try:
            payload = await self.to_ollama(messages)
            stream = await self._client.chat(
                model=model,
                messages=payload,
                stream=True,
                options={"temperature": self.temperature},
                keep_alive=self.keep_alive,
            )
            async for chunk in stream:
                part = chunk["message"]["content"] or ""
                if not part:
                    continue
                if first_token_ms is None:
                    first_token_ms = (time.perf_counter() - start) * 1000
                    logger.info(f"[LLM] First token from {model} in {first_token_ms:.0f}ms")
                accumulated += part
                yield accumulated
        except LLMGatewayError:
            raise
        except Exception as e:
            kind = classify_error(e)
            logger.error(f"[LLM] {model} failed ({kind}): {e}")
            raise LLMGatewayError(f"{model}: {e}", kind=kind) from e

        total_ms = (time.perf_counter() - start) * 1000
        logger.info(f"[LLM] {model} done in {total_ms:.0f}ms ({len(accumulated)} chars)")
