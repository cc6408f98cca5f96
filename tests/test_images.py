"""
tests/test_images.py
"""
from __future__ import annotations

import base64
import io

import pytest
from PIL import Image
from werkzeug.datastructures import FileStorage, Headers

from inkwell import images
from inkwell.images import (
    FALLBACK_QUALITY,
    MAX_PAYLOAD_BYTES,
    MSG_DECODE,
    PLACEHOLDER_COVER,
    PLACEHOLDER_PROFILE,
    ImageFile,
    ImageTooLargeError,
    ImageUploader,
    ImageValidationError,
    image_url,
    ingest,
    pick_quality,
    plan_dimensions,
    writer_for,
)

MB = 1024 * 1024


# ───────────────────────── helpers ──────────────────────────────────
def _encoded(w: int, h: int, fmt: str = "PNG", mode: str = "RGB") -> bytes:
    buf = io.BytesIO()
    Image.new(mode, (w, h), (200, 30, 30)).save(buf, format=fmt)
    return buf.getvalue()


def _decode_payload(payload: str) -> Image.Image:
    head, b64 = payload.split(",", 1)
    assert head.endswith(";base64")
    return Image.open(io.BytesIO(base64.b64decode(b64)))


class _Untouchable(io.BytesIO):
    """A stream that fails the test if anything reads it."""

    def read(self, *args):
        raise AssertionError("upload was read")


@pytest.fixture
def no_decode(monkeypatch):
    def _boom(*args, **kwargs):
        raise AssertionError("decoder was invoked")

    monkeypatch.setattr(images.Image, "open", _boom)


# ───────────────────────── planning ─────────────────────────────────
@pytest.mark.parametrize("size,expected", [
    ((4000, 3000), (1200, 900)),
    ((300, 200), (300, 200)),
    ((1200, 900), (1200, 900)),
    ((1000, 3000), (300, 900)),
    ((2400, 600), (1200, 300)),
    ((1, 5000), (1, 900)),
])
def test_plan_dimensions(size, expected):
    assert plan_dimensions(*size) == expected


def test_plan_dimensions_fits_both_sides():
    # width dominates but the scaled height would still overflow
    w, h = plan_dimensions(1300, 1000)
    assert h == 900
    assert 1169 <= w <= 1170


@pytest.mark.parametrize("size,quality", [
    ((1000, 1000), 0.8),
    ((1200, 900), 0.7),
    ((2000, 1001), 0.6),
])
def test_quality_tiers(size, quality):
    assert pick_quality(*size) == quality


@pytest.mark.parametrize("mime,writer", [
    ("image/jpeg", ("JPEG", "image/jpeg")),
    ("image/jpg", ("JPEG", "image/jpeg")),
    ("image/png", ("PNG", "image/png")),
    ("image/webp", ("WEBP", "image/webp")),
    ("image/bmp", ("PNG", "image/png")),
])
def test_writer_for(mime, writer):
    assert writer_for(mime) == writer


# ───────────────────────── gate ──────────────────────────────────────
def test_non_image_is_rejected_before_decode(no_decode):
    f = ImageFile(data=b"hello", mimetype="text/plain", filename="notes.txt")
    with pytest.raises(ImageValidationError) as exc:
        ingest(f)
    assert exc.value.status == 415


def test_oversized_upload_is_rejected_before_read(no_decode):
    f = ImageFile(
        mimetype="image/jpeg",
        filename="huge.jpg",
        size=3 * MB,
        stream=_Untouchable(b""),
    )
    with pytest.raises(ImageValidationError) as exc:
        ingest(f)
    assert exc.value.status == 413


def test_understated_part_length_does_not_bypass_gate(no_decode):
    # the multipart part claims 10 bytes but carries more than the limit
    fs = FileStorage(
        stream=io.BytesIO(b"\0" * (2 * MB + 1)),
        filename="sneaky.png",
        headers=Headers({"Content-Type": "image/png", "Content-Length": "10"}),
    )
    f = ImageFile.from_storage(fs)
    assert f.size == 10
    assert f.declared_size() == 2 * MB + 1
    with pytest.raises(ImageValidationError) as exc:
        ingest(f)
    assert exc.value.status == 413


def test_declared_size_wins_when_larger():
    f = ImageFile(data=b"tiny", mimetype="image/png", size=3 * MB)
    assert f.declared_size() == 3 * MB


def test_stream_size_is_measured_without_reading():
    stream = io.BytesIO(b"x" * 5000)
    f = ImageFile(mimetype="image/png", stream=stream)
    assert f.declared_size() == 5000
    assert stream.tell() == 0


# ───────────────────────── pipeline ──────────────────────────────────
def test_large_png_is_capped():
    f = ImageFile(
        data=_encoded(4000, 3000),
        mimetype="image/png",
        filename="big.png",
        size=int(1.8 * MB),
    )
    result = ingest(f)
    assert not result.placeholder
    assert (result.width, result.height) == (1200, 900)
    assert result.quality == 0.7
    assert result.payload.startswith("data:image/png;base64,")
    assert _decode_payload(result.payload).size == (1200, 900)


def test_small_png_keeps_its_size():
    raw = _encoded(300, 200)
    result = ingest(ImageFile(data=raw, mimetype="image/png", filename="small.png"))
    assert (result.width, result.height) == (300, 200)
    assert _decode_payload(result.payload).size == (300, 200)
    assert result.quality == 0.8


def test_jpeg_stays_jpeg():
    raw = _encoded(2000, 1000, fmt="JPEG")
    result = ingest(ImageFile(data=raw, mimetype="image/jpeg", filename="a.jpg"))
    assert result.mimetype == "image/jpeg"
    assert result.payload.startswith("data:image/jpeg;base64,")
    assert _decode_payload(result.payload).size == (1200, 600)


def test_transparent_png_can_be_written_as_jpeg():
    raw = _encoded(50, 50, mode="RGBA")
    result = ingest(ImageFile(data=raw, mimetype="image/jpeg", filename="odd.jpg"))
    assert _decode_payload(result.payload).mode == "RGB"


def test_oversized_first_pass_retries_once_at_fallback(monkeypatch):
    qualities: list[float] = []

    def _encode(canvas, fmt, quality):
        qualities.append(quality)
        return b"x" * MAX_PAYLOAD_BYTES if len(qualities) == 1 else b"ok"

    monkeypatch.setattr(images, "encode", _encode)
    result = ingest(ImageFile(data=_encoded(4000, 3000), mimetype="image/png"))
    assert qualities == [0.7, FALLBACK_QUALITY]
    assert result.quality == FALLBACK_QUALITY
    assert result.data == b"ok"


def test_still_too_large_after_retry_is_rejected(monkeypatch):
    qualities: list[float] = []

    def _encode(canvas, fmt, quality):
        qualities.append(quality)
        return b"x" * MAX_PAYLOAD_BYTES

    monkeypatch.setattr(images, "encode", _encode)
    with pytest.raises(ImageTooLargeError) as exc:
        ingest(ImageFile(data=_encoded(640, 480), mimetype="image/png"))
    assert exc.value.status == 413
    assert len(qualities) == 2            # exactly one retry


def test_corrupt_image_falls_back_to_placeholder():
    result = ingest(ImageFile(data=b"\x89PNG not really", mimetype="image/png"))
    assert result.placeholder
    assert result.payload == PLACEHOLDER_COVER
    assert result.error == MSG_DECODE


def test_truncated_image_falls_back_to_placeholder():
    raw = _encoded(300, 300)[:60]
    result = ingest(
        ImageFile(data=raw, mimetype="image/png"), placeholder=PLACEHOLDER_PROFILE
    )
    assert result.placeholder
    assert result.payload == PLACEHOLDER_PROFILE


def test_encoder_failure_falls_back_to_placeholder(monkeypatch):
    def _encode(canvas, fmt, quality):
        raise OSError("encoder exploded")

    monkeypatch.setattr(images, "encode", _encode)
    result = ingest(ImageFile(data=_encoded(20, 20), mimetype="image/png"))
    assert result.placeholder
    assert result.error == images.MSG_ENCODE


# ───────────────────────── uploader ──────────────────────────────────
def test_uploader_reports_initial_image():
    picked: list = []
    up = ImageUploader(on_image_select=picked.append, initial_image="/covers/a.png")
    assert picked == ["/covers/a.png"]
    assert up.preview == "/covers/a.png"


def test_uploader_success_and_rejection():
    picked: list = []
    up = ImageUploader(on_image_select=picked.append)

    payload = up.handle_file(ImageFile(data=_encoded(10, 10), mimetype="image/png"))
    assert payload.startswith("data:image/png")
    assert picked == [payload]
    assert up.error == ""
    assert not up.processing

    assert up.handle_file(ImageFile(data=b"hi", mimetype="text/plain")) is None
    assert up.error == images.MSG_NOT_IMAGE
    assert up.preview == payload           # unchanged
    assert picked == [payload]


def test_uploader_decode_failure_commits_placeholder():
    picked: list = []
    up = ImageUploader(on_image_select=picked.append, placeholder=PLACEHOLDER_PROFILE)
    up.handle_file(ImageFile(data=b"garbage", mimetype="image/gif"))
    assert picked == [PLACEHOLDER_PROFILE]
    assert up.error == MSG_DECODE


def test_latest_upload_wins():
    picked: list = []
    up = ImageUploader(on_image_select=picked.append)
    first = up.begin()
    second = up.begin()
    assert up.complete(first, "slow") is False
    assert up.complete(second, "fast") is True
    assert picked == ["fast"]
    assert up.preview == "fast"


def test_remove_cancels_in_flight_upload():
    picked: list = []
    up = ImageUploader(on_image_select=picked.append, initial_image="/a.png")
    ticket = up.begin()
    up.remove()
    assert up.complete(ticket, "late") is False
    assert up.preview is None
    assert picked == ["/a.png", None]


# ───────────────────────── display helper ────────────────────────────
@pytest.mark.parametrize("payload,expected", [
    (None, PLACEHOLDER_PROFILE),
    ("", PLACEHOLDER_PROFILE),
    ("data:image/png;base64,AAAA", PLACEHOLDER_PROFILE),
    ("https://cdn.example.com/a.png", "https://cdn.example.com/a.png"),
    ("/images/a.png", "/images/a.png"),
    ("uploads/a.png", "/uploads/a.png"),
])
def test_image_url(payload, expected):
    assert image_url(payload) == expected


def test_image_url_keeps_real_data_uri():
    uri = "data:image/png;base64," + "A" * 200
    assert image_url(uri, PLACEHOLDER_COVER) == uri
