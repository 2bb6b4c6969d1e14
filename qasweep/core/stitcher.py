"""Stitching and compression of captured segments.

Every segment is decoded as its own task; the composite is drawn only once
all of them have settled (decoded or failed). A failed decode leaves a gap
instead of aborting the composite. The decode-and-draw step is bounded by a
hard timeout. The composite is then JPEG-encoded with a quality that steps
down until the byte budget is met or the floor is reached.
"""

from __future__ import annotations

import asyncio
import base64
import io
import logging
from typing import Awaitable, Callable

from PIL import Image

from qasweep.config import STITCH_TIMEOUT_MS
from qasweep.errors import StitchTimeout
from qasweep.models.types import PageDimensions, Segment, StitchedImage

log = logging.getLogger(__name__)

Decoder = Callable[[str], Awaitable[Image.Image]]


def decode_data_url(data_url: str) -> Image.Image:
    """Decode a base64 image data URL into a fully loaded Pillow image."""
    header, sep, payload = data_url.partition(",")
    if not sep or not header.startswith("data:image/"):
        raise ValueError("Not an image data URL")
    image = Image.open(io.BytesIO(base64.b64decode(payload)))
    image.load()
    return image


def to_data_url(data: bytes, mime: str = "image/jpeg") -> str:
    return f"data:{mime};base64," + base64.b64encode(data).decode("ascii")


def encode_jpeg(image: Image.Image, quality: int) -> bytes:
    buf = io.BytesIO()
    image.convert("RGB").save(buf, format="JPEG", quality=quality)
    return buf.getvalue()


def compress_image(
    image: Image.Image,
    start_quality: int,
    quality_floor: int,
    quality_step: int,
    max_bytes: int,
    encode: Callable[[Image.Image, int], bytes] = encode_jpeg,
) -> tuple[bytes, int]:
    """Encode ``image``, lowering quality until it fits ``max_bytes``.

    Quality strictly decreases on every retry and never drops below the
    floor, so the loop always terminates. Returns (encoded bytes, quality).
    """
    if quality_step <= 0:
        raise ValueError("quality_step must be positive")
    quality = start_quality
    data = encode(image, quality)
    while len(data) > max_bytes and quality > quality_floor:
        quality = max(quality_floor, quality - quality_step)
        data = encode(image, quality)
    return data, quality


async def _decode_in_thread(data_url: str) -> Image.Image:
    return await asyncio.to_thread(decode_data_url, data_url)


class Stitcher:
    def __init__(self, timeout_ms: int = STITCH_TIMEOUT_MS, decode: Decoder | None = None):
        self.timeout_ms = timeout_ms
        self._decode = decode or _decode_in_thread

    async def stitch(
        self,
        segments: list[Segment],
        dimensions: PageDimensions,
        start_quality: int = 80,
        quality_floor: int = 30,
        quality_step: int = 10,
        max_bytes: int = 2 * 1024 * 1024,
    ) -> StitchedImage | None:
        """Composite ``segments`` into one JPEG, or None when that is impossible."""
        if not segments:
            return None

        try:
            canvas = await self.compose(segments, dimensions)
        except StitchTimeout as e:
            log.warning("%s", e)
            return None
        except (OSError, ValueError) as e:
            log.error("Stitching error: %s", e)
            return None

        if canvas is None:
            return None

        data, quality = await asyncio.to_thread(
            compress_image, canvas, start_quality, quality_floor, quality_step, max_bytes,
        )
        log.debug("Stitched %d segments into %dx%d at quality %d (%d bytes)",
                  len(segments), canvas.width, canvas.height, quality, len(data))
        return StitchedImage(
            data_url=to_data_url(data),
            quality=quality,
            size_bytes=len(data),
            width=canvas.width,
            height=canvas.height,
        )

    async def compose(self, segments: list[Segment], dimensions: PageDimensions) -> Image.Image | None:
        """Decode and draw under the hard timeout; raises StitchTimeout."""
        try:
            return await asyncio.wait_for(
                self._decode_and_draw(segments, dimensions),
                timeout=self.timeout_ms / 1000,
            )
        except asyncio.TimeoutError as e:
            raise StitchTimeout(self.timeout_ms) from e

    async def _decode_and_draw(self, segments: list[Segment], dimensions: PageDimensions) -> Image.Image | None:
        decoded = await asyncio.gather(
            *(self._decode(s.data_url) for s in segments),
            return_exceptions=True,
        )
        images: list[tuple[Segment, Image.Image]] = []
        for segment, image in zip(segments, decoded):
            if isinstance(image, BaseException):
                log.warning("Failed to load screenshot segment %d: %s", segment.index, image)
                continue
            images.append((segment, image))

        if not images:
            return None
        return await asyncio.to_thread(_draw, images, dimensions)


def _draw(images: list[tuple[Segment, Image.Image]], dimensions: PageDimensions) -> Image.Image:
    viewport_width = dimensions.viewport_width or images[0][1].width
    width = max(dimensions.document_width, viewport_width)
    # Stop at the last captured pixel row; the capture cap can leave the
    # rest of a very long document uncovered.
    covered = max(s.offset + s.height for s, _ in images)
    height = max(1, min(dimensions.document_height, covered)) if dimensions.document_height else covered
    canvas = Image.new("RGB", (width, height), "white")

    for segment, image in images:
        scale = image.width / viewport_width
        scroll_y = segment.scroll_y if segment.scroll_y is not None else segment.offset
        src_top = max(0, segment.offset - scroll_y)
        draw_height = min(
            segment.height,
            height - segment.offset,
            int(image.height / scale) - src_top,
        )
        if draw_height <= 0:
            continue

        piece = image.crop((0, round(src_top * scale), image.width, round((src_top + draw_height) * scale)))
        target = (round(image.width / scale), draw_height)
        if piece.size != target:
            piece = piece.resize(target)
        canvas.paste(piece.convert("RGB"), (0, segment.offset))

    return canvas
