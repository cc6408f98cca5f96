"""
Image ingestion for covers, avatars and inline post images.

    gate → read → decode → plan size → pick quality → encode
         → (one retry at 0.5 if still too big) → payload

Rejections (wrong type, too large before or after processing, unreadable
upload) raise :class:`ImageRejected`.  A file that cannot be decoded or
re-encoded does *not* raise: the result carries the placeholder asset and a
user-facing message so the document never stores a broken reference.
"""

import base64
import io
import logging
from dataclasses import dataclass
from itertools import count

from PIL import Image, UnidentifiedImageError

log = logging.getLogger(__name__)

MAX_UPLOAD_BYTES = 2 * 1024 * 1024
MAX_PAYLOAD_BYTES = int(1.5 * 1024 * 1024)
MAX_WIDTH, MAX_HEIGHT = 1200, 900
DEFAULT_QUALITY = 0.8
FALLBACK_QUALITY = 0.5
# (pixel count above which, quality) – checked top-down
QUALITY_TIERS = ((2_000_000, 0.6), (1_000_000, 0.7))

PLACEHOLDER_COVER = "/images/placeholder-cover.svg"
PLACEHOLDER_PROFILE = "/images/placeholder-profile.svg"

# mime type → Pillow writer; anything else is written as PNG
WRITERS = {
    "image/jpeg": "JPEG",
    "image/jpg": "JPEG",
    "image/pjpeg": "JPEG",
    "image/png": "PNG",
    "image/webp": "WEBP",
    "image/gif": "GIF",
}

MSG_NOT_IMAGE = "Please select an image file (PNG, JPG, JPEG, GIF)"
MSG_TOO_BIG = "Image size should be less than 2MB for better compatibility"
MSG_READ = "Error reading file. Please try another image."
MSG_DECODE = "Error loading image. Please try another image."
MSG_ENCODE = "Error processing image. Please try another image."
MSG_STILL_TOO_BIG = "Image is too large for storage. Please use a smaller image."


class ImageRejected(Exception):
    """Ingestion stopped without producing a payload."""

    status = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ImageValidationError(ImageRejected):
    def __init__(self, message: str, status: int = 415):
        super().__init__(message)
        self.status = status


class ImageReadError(ImageRejected):
    status = 400


class ImageTooLargeError(ImageRejected):
    status = 413


@dataclass
class ImageFile:
    """
    An upload as the pipeline sees it.

    Either *data* is given, or *stream* is read on demand.  *size* is the
    size the client declared; the gate never trusts it alone and also
    measures *data* or the stream (without reading it).
    """

    data: bytes | None = None
    mimetype: str = ""
    filename: str = ""
    size: int | None = None
    stream: io.IOBase | None = None

    @classmethod
    def from_storage(cls, fs) -> "ImageFile":
        """Wrap a werkzeug ``FileStorage``."""
        return cls(
            mimetype=(fs.mimetype or "").lower(),
            filename=fs.filename or "",
            size=fs.content_length or None,
            stream=fs.stream,
        )

    def declared_size(self) -> int:
        """The larger of the declared size and the bytes actually present."""
        measured = 0
        if self.data is not None:
            measured = len(self.data)
        elif self.stream is not None:
            pos = self.stream.tell()
            self.stream.seek(0, io.SEEK_END)
            measured = self.stream.tell() - pos
            self.stream.seek(pos)
        return max(self.size or 0, measured)

    def read(self) -> bytes:
        if self.data is None:
            if self.stream is None:
                raise OSError("upload has neither data nor stream")
            self.data = self.stream.read()
        return self.data


@dataclass
class IngestResult:
    payload: str
    mimetype: str = ""
    width: int = 0
    height: int = 0
    quality: float | None = None
    data: bytes = b""
    error: str = ""

    @property
    def placeholder(self) -> bool:
        return not self.data


def check_file(file: ImageFile, *, max_bytes: int = MAX_UPLOAD_BYTES) -> None:
    """Type/size gate.  Runs before anything is read or decoded."""
    if not (file.mimetype or "").lower().startswith("image/"):
        raise ImageValidationError(MSG_NOT_IMAGE, status=415)
    if file.declared_size() > max_bytes:
        raise ImageValidationError(MSG_TOO_BIG, status=413)


def plan_dimensions(
    width: int, height: int, max_w: int = MAX_WIDTH, max_h: int = MAX_HEIGHT
) -> tuple[int, int]:
    """
    Scale down (never up) by the dominant side, keeping the aspect ratio,
    then make sure the other side fits too.  Results are truncated.
    """
    w, h = float(width), float(height)
    if w > h:
        if w > max_w:
            w, h = max_w, h * max_w / w
    elif h > max_h:
        w, h = w * max_h / h, max_h
    if h > max_h:
        w, h = w * max_h / h, max_h
    if w > max_w:
        w, h = max_w, h * max_w / w
    return max(int(w), 1), max(int(h), 1)


def pick_quality(width: int, height: int) -> float:
    pixels = width * height
    for threshold, quality in QUALITY_TIERS:
        if pixels > threshold:
            return quality
    return DEFAULT_QUALITY


def writer_for(mimetype: str) -> tuple[str, str]:
    """Return ``(pillow_format, output_mimetype)`` for *mimetype*."""
    fmt = WRITERS.get((mimetype or "").lower())
    if fmt is None:
        return "PNG", "image/png"
    return fmt, "image/jpeg" if fmt == "JPEG" else mimetype.lower()


def _flatten(img: Image.Image) -> Image.Image:
    if img.mode == "RGB":
        return img
    background = Image.new("RGB", img.size, (255, 255, 255))
    rgba = img.convert("RGBA")
    background.paste(rgba, mask=rgba.split()[3])
    return background


def encode(canvas: Image.Image, fmt: str, quality: float) -> bytes:
    buf = io.BytesIO()
    if fmt == "JPEG":
        _flatten(canvas).save(buf, format="JPEG", quality=round(quality * 100))
    elif fmt == "WEBP":
        canvas.save(buf, format="WEBP", quality=round(quality * 100))
    elif fmt == "PNG":
        canvas.save(buf, format="PNG", optimize=True)
    else:
        canvas.save(buf, format=fmt)
    return buf.getvalue()


def data_uri(data: bytes, mimetype: str) -> str:
    return f"data:{mimetype};base64,{base64.b64encode(data).decode('ascii')}"


def _placeholder(message: str, placeholder: str) -> IngestResult:
    return IngestResult(payload=placeholder, error=message)


def ingest(
    file: ImageFile,
    *,
    max_upload: int = MAX_UPLOAD_BYTES,
    max_payload: int = MAX_PAYLOAD_BYTES,
    max_size: tuple[int, int] = (MAX_WIDTH, MAX_HEIGHT),
    placeholder: str = PLACEHOLDER_COVER,
) -> IngestResult:
    """Turn an uploaded image into a bounded-size data URI payload."""
    check_file(file, max_bytes=max_upload)

    try:
        raw = file.read()
    except OSError as exc:
        log.error("Error reading %s: %s", file.filename or "upload", exc)
        raise ImageReadError(MSG_READ) from exc

    try:
        with Image.open(io.BytesIO(raw)) as src:
            src.load()
            bitmap = src.convert("RGBA")
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError,
            Image.DecompressionBombError) as exc:
        log.error("Error loading image for optimization: %s", exc)
        return _placeholder(MSG_DECODE, placeholder)

    width, height = plan_dimensions(bitmap.width, bitmap.height, *max_size)
    quality = pick_quality(width, height)
    fmt, mimetype = writer_for(file.mimetype)
    log.debug(
        "Planning %dx%d -> %dx%d at quality %.1f (%s)",
        bitmap.width, bitmap.height, width, height, quality, fmt,
    )

    try:
        canvas = bitmap.resize((width, height), Image.LANCZOS)
        data = encode(canvas, fmt, quality)
        payload = data_uri(data, mimetype)
        log.info(
            "Image optimized: %d KB vs %d KB",
            round(len(raw) * 4 / 3 / 1024), round(len(payload) / 1024),
        )
        if len(payload) > max_payload:
            log.warning("Image still large after optimization. Trying lower quality...")
            quality = FALLBACK_QUALITY
            data = encode(canvas, fmt, quality)
            payload = data_uri(data, mimetype)
    except (OSError, ValueError, KeyError) as exc:
        log.error("Error during image optimization: %s", exc)
        return _placeholder(MSG_ENCODE, placeholder)

    if len(payload) > max_payload:
        log.warning("Image still too large even with lower quality (%d bytes).", len(payload))
        raise ImageTooLargeError(MSG_STILL_TOO_BIG)

    return IngestResult(
        payload=payload,
        mimetype=mimetype,
        width=width,
        height=height,
        quality=quality,
        data=data,
    )


class ImageUploader:
    """
    One image field (cover, avatar): current preview, last error and the
    ``on_image_select`` callback.

    Every ingestion takes a ticket; only the most recent ticket may update
    the field, so a slow upload cannot clobber a newer one and a removal
    cancels whatever is still in flight.
    """

    def __init__(self, on_image_select=None, initial_image: str | None = None,
                 placeholder: str = PLACEHOLDER_COVER, ingest_fn=None):
        self.on_image_select = on_image_select
        self.placeholder = placeholder
        self.preview = initial_image
        self.error = ""
        self.processing = False
        self._ingest = ingest_fn or ingest
        self._tickets = count(1)
        self._latest = 0
        if initial_image and on_image_select:
            on_image_select(initial_image)

    def begin(self) -> int:
        self._latest = next(self._tickets)
        self.error = ""
        self.processing = True
        return self._latest

    def complete(self, ticket: int, payload: str | None, error: str = "") -> bool:
        """Apply an ingestion outcome; ``False`` when *ticket* was superseded."""
        if ticket != self._latest:
            log.info("Dropping superseded upload #%d (latest is #%d)", ticket, self._latest)
            return False
        self.processing = False
        self.error = error
        if payload is not None:
            self.preview = payload
            if self.on_image_select:
                self.on_image_select(payload)
        return True

    def handle_file(self, file: ImageFile) -> str | None:
        ticket = self.begin()
        try:
            result = self._ingest(file, placeholder=self.placeholder)
        except ImageRejected as exc:
            self.complete(ticket, None, exc.message)
            return None
        self.complete(ticket, result.payload, result.error)
        return result.payload

    def remove(self) -> None:
        self._latest = next(self._tickets)
        self.processing = False
        self.preview = None
        self.error = ""
        if self.on_image_select:
            self.on_image_select(None)


def image_url(payload: str | None, fallback: str = PLACEHOLDER_PROFILE) -> str:
    """Pick what to put in an ``<img src>`` for a stored payload."""
    if not payload:
        return fallback
    if payload.startswith("data:image/"):
        return payload if len(payload) >= 100 else fallback
    if payload.startswith(("http://", "https://", "/")):
        return payload
    return f"/{payload}"
