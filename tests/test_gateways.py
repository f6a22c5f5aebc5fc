"""
LLM, embedding and image generation adapters, with their clients faked.
"""

import asyncio
from unittest.mock import MagicMock

import numpy as np
import pytest
import requests

from kindred.embeddings import HashingEmbedder, OllamaEmbedder, build_embedder
from kindred.config import Config
from kindred.errors import EmbeddingError, ImageGenError, LLMGatewayError
from kindred.image_gen import HttpImageGenGateway, ImageGenNotConfigured
from kindred.llm_gateway import OllamaGateway, classify_error
from kindred.message_builder import ImagePart, Message, RouteHint, TextPart
from kindred.models import ImageGenCommand


# ============================================================================
# LLM
# ============================================================================

class FakeAsyncClient:
    def __init__(self, parts=(), error=None, fail_after=None):
        self.parts = list(parts)
        self.error = error
        self.fail_after = fail_after
        self.calls = []

    async def chat(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None and self.fail_after is None:
            raise self.error

        async def stream():
            for i, part in enumerate(self.parts):
                if self.fail_after is not None and i == self.fail_after:
                    raise self.error
                yield {"message": {"content": part}}

        return stream()


async def collect(gateway, messages, route=RouteHint.TEXT):
    return [text async for text in gateway.stream_chat(messages, route)]


def test_stream_yields_accumulated_text():
    client = FakeAsyncClient(["[EMOTION:happy] ", "", "Hi", " there"])
    gateway = OllamaGateway(chat_model="chat", vision_model="eyes", client=client)

    seen = asyncio.run(collect(gateway, [Message("user", "hello")]))

    assert seen == ["[EMOTION:happy] ", "[EMOTION:happy] Hi", "[EMOTION:happy] Hi there"]
    assert client.calls[0]["model"] == "chat"
    assert client.calls[0]["stream"] is True


def test_vision_route_sends_image_payloads():
    client = FakeAsyncClient(["ok"])
    gateway = OllamaGateway(chat_model="chat", vision_model="eyes", client=client)
    message = Message("user", [TextPart("what is it?"), ImagePart("data:image/png;base64,QUJD")])

    asyncio.run(collect(gateway, [message], RouteHint.VISION))

    call = client.calls[0]
    assert call["model"] == "eyes"
    assert call["messages"] == [{"role": "user", "content": "what is it?", "images": ["QUJD"]}]


def test_connection_failure_is_network_kind():
    gateway = OllamaGateway(client=FakeAsyncClient(error=ConnectionError("refused")))
    with pytest.raises(LLMGatewayError) as info:
        asyncio.run(collect(gateway, [Message("user", "hi")]))
    assert info.value.kind == "network"


def test_mid_stream_failure_surfaces_once():
    client = FakeAsyncClient(["a", "b", "c"], error=TimeoutError("slow"), fail_after=2)
    gateway = OllamaGateway(client=client)
    seen = []

    async def run():
        async for text in gateway.stream_chat([Message("user", "hi")], RouteHint.TEXT):
            seen.append(text)

    with pytest.raises(LLMGatewayError) as info:
        asyncio.run(run())
    assert seen == ["a", "ab"]
    assert info.value.kind == "timeout"


def test_classify_error():
    assert classify_error(asyncio.TimeoutError()) == "timeout"
    assert classify_error(ConnectionRefusedError()) == "network"
    assert classify_error(ValueError("bad model")) == "service"
    assert classify_error(LLMGatewayError("x", kind="timeout")) == "timeout"


def test_gateway_from_config():
    config = Config({"llm": {"host": "http://gpu:11434", "chat_model": "a", "vision_model": "b", "temperature": 0.3}})
    gateway = OllamaGateway.from_config(config)
    assert gateway.model_for(RouteHint.VISION) == "b"
    assert gateway.temperature == 0.3


# ============================================================================
# Embeddings
# ============================================================================

def test_hashing_embedder_is_unit_and_stable():
    embedder = HashingEmbedder(dimensions=64)
    a = embedder.embed("I adopted a cat")
    assert a.shape == (64,)
    assert np.linalg.norm(a) == pytest.approx(1.0, abs=1e-5)
    assert np.array_equal(a, HashingEmbedder(dimensions=64).embed("I adopted a cat"))
    assert not embedder.embed("   ").any()


def test_hashing_embedder_ranks_related_text_higher():
    embedder = HashingEmbedder()
    query = embedder.embed("my cat Miso")
    related = embedder.embed("Miso the cat sleeps a lot")
    unrelated = embedder.embed("the weather is cold")
    assert float(query @ related) > float(query @ unrelated)


def test_ollama_embedder_normalizes():
    client = MagicMock()
    client.embed.return_value = {"embeddings": [[3.0, 4.0]]}
    vector = OllamaEmbedder(model="m", client=client).embed("hi")
    assert vector.tolist() == pytest.approx([0.6, 0.8])
    client.embed.assert_called_once_with(model="m", input="hi")


def test_ollama_embedder_errors():
    client = MagicMock()
    client.embed.return_value = {"embeddings": []}
    with pytest.raises(EmbeddingError):
        OllamaEmbedder(client=client).embed("hi")
    client.embed.side_effect = ConnectionError("down")
    with pytest.raises(EmbeddingError):
        OllamaEmbedder(client=client).embed("hi")


def test_build_embedder():
    assert isinstance(build_embedder(Config({"embedding": {"backend": "hashing", "dimensions": 32}})), HashingEmbedder)
    with pytest.raises(ValueError):
        build_embedder(Config({"embedding": {"backend": "telepathy"}}))


# ============================================================================
# Image generation
# ============================================================================

def response(status=200, payload=None):
    resp = MagicMock()
    resp.status_code = status
    resp.json.return_value = payload or {}
    if status >= 400:
        resp.raise_for_status.side_effect = requests.HTTPError(f"{status}")
    return resp


def test_generate_returns_url():
    session = MagicMock()
    session.post.return_value = response(payload={"data": [{"url": "https://img/1.png"}]})
    gateway = HttpImageGenGateway("https://api.example/v1/", api_key="k", model="m", session=session)

    url = asyncio.run(gateway.generate(ImageGenCommand(prompt="夕阳")))

    assert url == "https://img/1.png"
    args, kwargs = session.post.call_args
    assert args[0] == "https://api.example/v1/images/generations"
    assert kwargs["json"] == {"prompt": "夕阳", "size": "1920x1920", "n": 1, "model": "m"}
    assert kwargs["headers"]["Authorization"] == "Bearer k"


def test_b64_payload_becomes_data_url():
    session = MagicMock()
    session.post.return_value = response(payload={"data": [{"b64_json": "QUJD"}]})
    gateway = HttpImageGenGateway("https://api.example/v1", session=session)
    assert gateway.generate_sync(ImageGenCommand(prompt="x")) == "data:image/png;base64,QUJD"


def test_transient_failures_are_retried(monkeypatch):
    monkeypatch.setattr("kindred.image_gen.time.sleep", lambda s: None)
    session = MagicMock()
    session.post.side_effect = [
        response(status=503),
        response(payload={"data": [{"url": "https://img/2.png"}]}),
    ]
    gateway = HttpImageGenGateway("https://api.example/v1", session=session)
    assert gateway.generate_sync(ImageGenCommand(prompt="x")) == "https://img/2.png"
    assert session.post.call_count == 2


def test_gives_up_after_retries(monkeypatch):
    monkeypatch.setattr("kindred.image_gen.time.sleep", lambda s: None)
    session = MagicMock()
    session.post.return_value = response(status=500)
    gateway = HttpImageGenGateway("https://api.example/v1", max_retries=1, session=session)
    with pytest.raises(ImageGenError):
        gateway.generate_sync(ImageGenCommand(prompt="x"))
    assert session.post.call_count == 2


def test_auth_failure_is_not_retried():
    session = MagicMock()
    session.post.return_value = response(status=401)
    gateway = HttpImageGenGateway("https://api.example/v1", session=session)
    with pytest.raises(ImageGenNotConfigured):
        gateway.generate_sync(ImageGenCommand(prompt="x"))
    assert session.post.call_count == 1


def test_unconfigured_endpoint():
    gateway = HttpImageGenGateway("", session=MagicMock())
    assert not gateway.configured
    with pytest.raises(ImageGenNotConfigured):
        gateway.generate_sync(ImageGenCommand(prompt="x"))
