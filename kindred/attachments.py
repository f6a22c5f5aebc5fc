"""
Attachment preprocessing.

ImageEncoder.encode(uri)                  -> data URL the model can read
FrameExtractor.extract_frames(uri, n)     -> up to n data URLs, evenly spaced, in temporal order

uri may be a local path, a file:// URI or an http(s) URL.
Every failure is an AttachmentError; the orchestrator degrades the turn to
text-only with a warning. `unsupported` marks formats we refuse outright.
"""

import asyncio
import base64
import logging
import mimetypes
import shutil
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List
from urllib.parse import unquote, urlparse

import requests

from kindred.errors import AttachmentError
from kindred.policy import DEFAULT_MAX_VIDEO_FRAMES

logger = logging.getLogger(__name__)

SUPPORTED_IMAGE_TYPES = {"image/jpeg", "image/png", "image/webp", "image/gif"}
MAX_INPUT_BYTES = 20 * 1024 * 1024
MAX_BASE64_LENGTH = 4 * 1024 * 1024
MAX_FRAME_DIMENSION = 1024
MIN_VIDEO_SECONDS = 0.1
MAX_VIDEO_SECONDS = 10 * 60


class UnsupportedAttachment(AttachmentError):
    pass


def local_path(uri: str) -> Path:
    if uri.startswith("file://"):
        return Path(unquote(urlparse(uri).path))
    return Path(uri)


def to_data_url(data: bytes, mime: str) -> str:
    return f"data:{mime};base64,{base64.b64encode(data).decode('ascii')}"


def sample_offsets(duration_seconds: float, count: int) -> List[float]:
    """count points splitting the clip into count+1 equal gaps (never the very first or last frame)."""
    if count <= 0 or duration_seconds <= 0:
        return []
    interval = duration_seconds / (count + 1)
    return [round(interval * i, 3) for i in range(1, count + 1)]


class ImageEncoder(ABC):
    @abstractmethod
    async def encode(self, uri: str) -> str:
        pass


class FrameExtractor(ABC):
    @abstractmethod
    async def extract_frames(self, uri: str, max_frames: int = DEFAULT_MAX_VIDEO_FRAMES) -> List[str]:
        pass


class FileImageEncoder(ImageEncoder):
    def __init__(self, timeout_seconds: float = 15.0):
        self.timeout_seconds = timeout_seconds

    def _read(self, uri: str):
        if uri.startswith(("http://", "https://")):
            response = requests.get(uri, timeout=self.timeout_seconds)
            response.raise_for_status()
            mime = response.headers.get("Content-Type", "").split(";")[0].strip()
            return response.content, mime or mimetypes.guess_type(uri)[0]
        path = local_path(uri)
        if not path.is_file():
            raise AttachmentError(f"image not found: {path}")
        if path.stat().st_size > MAX_INPUT_BYTES:
            raise AttachmentError(f"image larger than {MAX_INPUT_BYTES // (1024 * 1024)}MB")
        return path.read_bytes(), mimetypes.guess_type(path.name)[0]

    def encode_sync(self, uri: str) -> str:
        if uri.startswith("data:"):
            return uri
        try:
            data, mime = self._read(uri)
        except (OSError, requests.RequestException) as e:
            raise AttachmentError(f"could not read image: {e}") from e
        if mime not in SUPPORTED_IMAGE_TYPES:
            raise UnsupportedAttachment(f"unsupported image type: {mime}")
        if len(data) > MAX_INPUT_BYTES:
            raise AttachmentError("image too large")
        url = to_data_url(data, mime)
        if len(url) > MAX_BASE64_LENGTH:
            raise AttachmentError("encoded image too large")
        return url

    async def encode(self, uri: str) -> str:
        return await asyncio.to_thread(self.encode_sync, uri)


class FfmpegFrameExtractor(FrameExtractor):
    """Uses the ffprobe / ffmpeg binaries; frames come back as JPEG data URLs."""

    def __init__(self, ffmpeg: str = "ffmpeg", ffprobe: str = "ffprobe"):
        self.ffmpeg = ffmpeg
        self.ffprobe = ffprobe

    async def _run(self, *args: str) -> bytes:
        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise AttachmentError(f"{args[0]} unavailable: {e}") from e
        stdout, stderr = await proc.communicate()
        if proc.returncode != 0:
            raise AttachmentError(f"{args[0]} exited {proc.returncode}: {stderr.decode(errors='replace')[-200:]}")
        return stdout

    async def probe_duration(self, source: str) -> float:
        out = await self._run(
            self.ffprobe, "-v", "error",
            "-show_entries", "format=duration",
            "-of", "default=noprint_wrappers=1:nokey=1",
            source,
        )
        try:
            return float(out.decode().strip())
        except ValueError as e:
            raise AttachmentError("video duration unknown") from e

    async def _frame_at(self, source: str, offset: float) -> bytes:
        scale = f"scale='min({MAX_FRAME_DIMENSION},iw)':'min({MAX_FRAME_DIMENSION},ih)':force_original_aspect_ratio=decrease"
        return await self._run(
            self.ffmpeg, "-v", "error",
            "-ss", f"{offset:.3f}",
            "-i", source,
            "-frames:v", "1",
            "-vf", scale,
            "-f", "image2pipe", "-vcodec", "mjpeg", "-q:v", "5",
            "-",
        )

    async def extract_frames(self, uri: str, max_frames: int = DEFAULT_MAX_VIDEO_FRAMES) -> List[str]:
        if shutil.which(self.ffmpeg) is None or shutil.which(self.ffprobe) is None:
            raise AttachmentError("ffmpeg/ffprobe not installed")
        source = uri if uri.startswith(("http://", "https://")) else str(local_path(uri))

        duration = await self.probe_duration(source)
        if duration < MIN_VIDEO_SECONDS:
            raise AttachmentError("video too short")
        if duration > MAX_VIDEO_SECONDS:
            logger.warning("[VIDEO] Longer than 10 minutes, sampling the first 10")
            duration = MAX_VIDEO_SECONDS

        count = min(max(1, max_frames), max(1, int(duration)))
        frames = []
        for offset in sample_offsets(duration, count):
            try:
                data = await self._frame_at(source, offset)
            except AttachmentError as e:
                logger.warning(f"[VIDEO] Frame at {offset:.2f}s failed: {e}")
                continue
            if data:
                frames.append(to_data_url(data, "image/jpeg"))
        if not frames:
            raise AttachmentError("no frames could be extracted")
        logger.info(f"[VIDEO] Extracted {len(frames)}/{count} frames from {duration:.1f}s clip")
        return frames
