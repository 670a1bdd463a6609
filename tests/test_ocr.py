import base64
import time
import unittest

import pytest
import requests

from engines.ocr import (
    ImageValidationError,
    OcrError,
    OcrService,
    VisionOcrClient,
    check_size,
    decode_image,
    download_image,
    ocr_confidence,
)
from fakes import FakeOcrClient, image_base64, image_bytes
from schemas import ImageRef


def test_size_window_boundaries():
    with pytest.raises(ImageValidationError, match="Image too small or invalid"):
        check_size(b"x" * 99)
    assert check_size(b"x" * 100) == b"x" * 100
    assert len(check_size(b"x" * (5 * 1024 * 1024))) == 5 * 1024 * 1024
    with pytest.raises(ImageValidationError, match=r"Image too large \(max 5MB\)"):
        check_size(b"x" * (5 * 1024 * 1024 + 1))


def test_decode_accepts_data_uri_and_rejects_garbage():
    raw = image_bytes()

    assert decode_image(f"data:image/png;base64,{image_base64()}") == raw
    with pytest.raises(ImageValidationError, match="Invalid image format"):
        decode_image("not*base64*at*all")
    with pytest.raises(ImageValidationError, match="No image data provided"):
        decode_image("")


def test_confidence_skips_full_text_annotation():
    response = {
        "textAnnotations": [
            {"description": "1. Solve 2x+3=9"},
            {"description": "Solve", "confidence": 0.9},
            {"description": "2x+3=9"},
        ]
    }

    assert ocr_confidence(response) == pytest.approx(0.8)
    assert ocr_confidence({"textAnnotations": [{"description": "x"}]}) == 0.5
    assert ocr_confidence({}) == 0.0


class _StreamResponse:
    def __init__(self, chunks, status_code=200, headers=None):
        self._chunks = chunks
        self.status_code = status_code
        self.headers = headers or {"Content-Type": "image/png"}
        self.closed = False

    def iter_content(self, chunk_size):
        yield from self._chunks

    def close(self):
        self.closed = True


def test_download_aborts_when_body_exceeds_limit():
    resp = _StreamResponse([b"x" * 600, b"x" * 600])

    with pytest.raises(ImageValidationError, match="Image too large"):
        download_image("https://cdn.example.test/a.png", max_bytes=1000, get=lambda *a, **k: resp)
    assert resp.closed


def test_download_rejects_non_image_content():
    resp = _StreamResponse([b"<html>"], headers={"Content-Type": "text/html"})

    with pytest.raises(ImageValidationError, match="does not point to an image"):
        download_image("https://cdn.example.test/page", get=lambda *a, **k: resp)


def test_download_timeout_is_a_validation_error():
    def _timeout(*args, **kwargs):
        raise requests.Timeout("read timed out")

    with pytest.raises(ImageValidationError, match="timed out"):
        download_image("https://cdn.example.test/a.png", get=_timeout)


class _Resp:
    def __init__(self, status_code, payload=None):
        self.status_code = status_code
        self._payload = payload or {}
        self.text = str(self._payload)

    def json(self):
        return self._payload


def test_vision_client_maps_quota_errors():
    client = VisionOcrClient("https://ocr.example.test/annotate", "key", post=lambda *a, **k: _Resp(429))

    with pytest.raises(OcrError) as excinfo:
        client.detect(image_bytes())
    assert excinfo.value.kind == "quota"


def test_vision_client_returns_first_response():
    payload = {"responses": [{"textAnnotations": [{"description": "1. Find x"}]}]}
    client = VisionOcrClient("https://ocr.example.test/annotate", "key", post=lambda *a, **k: _Resp(200, payload))

    assert client.detect(image_bytes())["textAnnotations"][0]["description"] == "1. Find x"


class OcrServiceTests(unittest.IsolatedAsyncioTestCase):
    async def test_second_extraction_of_same_bytes_hits_cache(self):
        client = FakeOcrClient("1. Solve 2x+3=9")
        service = OcrService(client)
        image = ImageRef(kind="direct", data=image_base64())

        first = await service.extract(image)
        second = await service.extract(ImageRef(kind="direct", data=f"data:image/png;base64,{image_base64()}"))

        self.assertTrue(first.success)
        self.assertFalse(first.cached)
        self.assertTrue(second.cached)
        self.assertEqual(second.text, "1. Solve 2x+3=9")
        self.assertEqual(first.image_hash, second.image_hash)
        self.assertEqual(client.calls, 1)

    async def test_url_images_are_downloaded(self):
        client = FakeOcrClient("2. Find the area")
        service = OcrService(client, downloader=lambda url: image_bytes(7))

        outcome = await service.extract(ImageRef(kind="url", data="https://cdn.example.test/hw.jpg"))

        self.assertTrue(outcome.success)
        self.assertEqual(outcome.text, "2. Find the area")

    async def test_small_image_is_rejected_before_ocr(self):
        client = FakeOcrClient("unused")
        service = OcrService(client)

        outcome = await service.extract(ImageRef(kind="direct", data=base64.b64encode(b"tiny").decode()))

        self.assertFalse(outcome.success)
        self.assertEqual(outcome.error_kind, "validation")
        self.assertEqual(outcome.error, "Image too small or invalid")
        self.assertEqual(client.calls, 0)

    async def test_slow_ocr_times_out(self):
        class SlowClient:
            def detect(self, raw):
                time.sleep(0.3)
                return {}

        service = OcrService(SlowClient(), timeout=0.05)

        outcome = await service.extract(ImageRef(kind="direct", data=image_base64()))

        self.assertFalse(outcome.success)
        self.assertEqual(outcome.error_kind, "timeout")
