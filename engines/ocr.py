"""Homework image intake: validation, URL download, hashing and cached OCR."""

from __future__ import annotations

import asyncio
import base64
import binascii
import hashlib
import logging
import os
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional

import requests

from engines.caching import TTLCache
from schemas import ImageRef

logger = logging.getLogger(__name__)

MIN_IMAGE_BYTES = 100
MAX_IMAGE_BYTES = 5 * 1024 * 1024
DOWNLOAD_TIMEOUT_SECONDS = 10
OCR_TIMEOUT_SECONDS = 15
OCR_CACHE_SIZE = 100
OCR_CACHE_TTL_SECONDS = 24 * 60 * 60
DEFAULT_TOKEN_CONFIDENCE = 0.7
DEFAULT_OCR_URL = "https://vision.googleapis.com/v1/images:annotate"
USER_AGENT = "GOAT-StudyBot/2.0 (+homework-ocr)"

_DATA_URI = re.compile(r"^data:image/[a-z0-9.+-]+;base64,", re.IGNORECASE)


class ImageValidationError(ValueError):
    """The learner's image cannot be used; ``str(exc)`` is the learner-facing reason."""


class OcrError(RuntimeError):
    """OCR collaborator failure. ``kind`` is ``timeout``, ``quota`` or ``generic``."""

    def __init__(self, kind: str, message: str) -> None:
        super().__init__(message)
        self.kind = kind


@dataclass
class OcrOutcome:
    success: bool
    text: str = ""
    confidence: float = 0.0
    image_hash: Optional[str] = None
    cached: bool = False
    error: Optional[str] = None
    error_kind: Optional[str] = None


def decode_image(data: Optional[str]) -> bytes:
    """Decode inline base64 (optionally a data URI) and enforce the size window."""

    if not data:
        raise ImageValidationError("No image data provided")
    payload = _DATA_URI.sub("", data.strip())
    payload = re.sub(r"\s+", "", payload)
    try:
        raw = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ImageValidationError("Invalid image format") from exc
    return check_size(raw)


def check_size(raw: bytes) -> bytes:
    if len(raw) < MIN_IMAGE_BYTES:
        raise ImageValidationError("Image too small or invalid")
    if len(raw) > MAX_IMAGE_BYTES:
        raise ImageValidationError("Image too large (max 5MB)")
    return raw


def download_image(
    url: str,
    *,
    timeout: float = DOWNLOAD_TIMEOUT_SECONDS,
    max_bytes: int = MAX_IMAGE_BYTES,
    get: Callable[..., Any] = requests.get,
) -> bytes:
    """Fetch ``url``; abort as soon as the body exceeds ``max_bytes``."""

    try:
        resp = get(url, timeout=timeout, stream=True, headers={"User-Agent": USER_AGENT})
    except requests.Timeout as exc:
        raise ImageValidationError("Image download timed out") from exc
    except requests.RequestException as exc:
        raise ImageValidationError("Could not download image") from exc

    try:
        if resp.status_code >= 400:
            raise ImageValidationError(f"Could not download image (HTTP {resp.status_code})")
        content_type = (resp.headers.get("Content-Type") or "").lower()
        if content_type and not content_type.startswith("image/"):
            raise ImageValidationError("Link does not point to an image")
        declared = resp.headers.get("Content-Length")
        if declared and declared.isdigit() and int(declared) > max_bytes:
            raise ImageValidationError("Image too large (max 5MB)")

        chunks = []
        received = 0
        for chunk in resp.iter_content(chunk_size=64 * 1024):
            if not chunk:
                continue
            received += len(chunk)
            if received > max_bytes:
                raise ImageValidationError("Image too large (max 5MB)")
            chunks.append(chunk)
    finally:
        resp.close()
    return check_size(b"".join(chunks))


def hash_image(raw: bytes) -> str:
    return hashlib.sha256(raw).hexdigest()


def ocr_confidence(response: Mapping[str, Any]) -> float:
    """Average token confidence, skipping the first (full-text) annotation."""

    annotations = response.get("textAnnotations") or []
    if not annotations:
        return 0.0
    tokens = annotations[1:]
    if not tokens:
        return 0.5
    total = 0.0
    for token in tokens:
        value = token.get("confidence")
        total += float(value) if isinstance(value, (int, float)) else DEFAULT_TOKEN_CONFIDENCE
    return max(0.0, min(1.0, total / len(tokens)))


def full_text(response: Mapping[str, Any]) -> str:
    annotations = response.get("textAnnotations") or []
    if annotations and annotations[0].get("description"):
        return str(annotations[0]["description"])
    return str((response.get("fullTextAnnotation") or {}).get("text") or "")


class VisionOcrClient:
    """Blocking client for an ``images:annotate`` style text-detection endpoint."""

    def __init__(
        self,
        url: Optional[str] = None,
        api_key: Optional[str] = None,
        *,
        timeout: float = OCR_TIMEOUT_SECONDS,
        post: Callable[..., Any] = requests.post,
    ) -> None:
        self.url = url or os.getenv("OCR_URL") or DEFAULT_OCR_URL
        self.api_key = api_key if api_key is not None else os.getenv("OCR_API_KEY", "")
        self.timeout = timeout
        self._post = post

    @property
    def configured(self) -> bool:
        return bool(self.api_key) or self.url != DEFAULT_OCR_URL

    def detect(self, raw: bytes) -> Dict[str, Any]:
        if not self.configured:
            raise OcrError("generic", "OCR endpoint not configured")
        body = {
            "requests": [
                {
                    "image": {"content": base64.b64encode(raw).decode("ascii")},
                    "features": [{"type": "TEXT_DETECTION"}],
                }
            ]
        }
        params = {"key": self.api_key} if self.api_key else None
        try:
            resp = self._post(self.url, json=body, params=params, timeout=self.timeout)
        except requests.Timeout as exc:
            raise OcrError("timeout", "OCR processing timeout") from exc
        except requests.RequestException as exc:
            raise OcrError("generic", f"OCR request failed: {exc}") from exc

        if resp.status_code == 429:
            raise OcrError("quota", "OCR quota exceeded")
        if resp.status_code >= 400:
            raise OcrError("generic", f"OCR-HTTP {resp.status_code}: {resp.text[:200]}")
        try:
            data = resp.json()
        except ValueError as exc:
            raise OcrError("generic", "OCR returned invalid JSON") from exc

        result = (data.get("responses") or [{}])[0]
        error = result.get("error")
        if error:
            status = str(error.get("status", "")).upper()
            kind = "quota" if status == "RESOURCE_EXHAUSTED" or error.get("code") == 8 else "generic"
            raise OcrError(kind, str(error.get("message") or status or "OCR error"))
        return result


class OcrService:
    """Turns an :class:`ImageRef` into text, caching by SHA-256 of the bytes."""

    def __init__(
        self,
        client: Optional[Any] = None,
        *,
        cache: Optional[TTLCache[Dict[str, Any]]] = None,
        timeout: float = OCR_TIMEOUT_SECONDS,
        downloader: Callable[[str], bytes] = download_image,
    ) -> None:
        self.client = client if client is not None else VisionOcrClient(timeout=timeout)
        self.cache: TTLCache[Dict[str, Any]] = cache if cache is not None else TTLCache(OCR_CACHE_SIZE, OCR_CACHE_TTL_SECONDS)
        self.timeout = timeout
        self._download = downloader

    async def load_bytes(self, image: ImageRef) -> bytes:
        if image.kind == "url":
            return await asyncio.to_thread(self._download, image.data)
        return decode_image(image.data)

    async def extract(self, image: ImageRef) -> OcrOutcome:
        try:
            raw = await self.load_bytes(image)
        except ImageValidationError as exc:
            logger.info("Rejected homework image: %s", exc)
            return OcrOutcome(False, error=str(exc), error_kind="validation")

        image_hash = hash_image(raw)
        cached = self.cache.get(image_hash)
        if cached is not None:
            logger.info("OCR cache hit for image %s", image_hash[:8])
            return OcrOutcome(True, cached["text"], cached["confidence"], image_hash, cached=True)

        try:
            response = await asyncio.wait_for(asyncio.to_thread(self.client.detect, raw), self.timeout)
        except asyncio.TimeoutError:
            logger.warning("OCR timed out after %ss for %s", self.timeout, image_hash[:8])
            return OcrOutcome(False, image_hash=image_hash, error="OCR processing timeout", error_kind="timeout")
        except OcrError as exc:
            logger.warning("OCR failed (%s) for %s: %s", exc.kind, image_hash[:8], exc)
            return OcrOutcome(False, image_hash=image_hash, error=str(exc), error_kind=exc.kind)

        entry = {"text": full_text(response), "confidence": ocr_confidence(response)}
        self.cache.add(image_hash, entry)
        logger.info("Cached OCR result for image %s", image_hash[:8])
        return OcrOutcome(True, entry["text"], entry["confidence"], image_hash)
