"""
Invisible LSB watermark for certificate images.

The payload is each character's 8-bit code, most significant bit first,
followed by the terminator byte ``00000011``. Bits go into the least
significant bit of the red channel, one pixel per bit, in raster order
(left to right, top to bottom). Only lossless formats (PNG) keep the
payload intact; any lossy re-encode destroys it.
"""

from io import BytesIO
import logging
from typing import Iterator, Optional

from PIL import Image, UnidentifiedImageError

from certguard.errors import MalformedInputError, WatermarkCapacityError

logger = logging.getLogger(__name__)

TERMINATOR = 0b00000011

_DECODE_ERRORS = (UnidentifiedImageError, OSError, ValueError, SyntaxError)


def required_pixels(signature: str) -> int:
    """Pixels needed to carry ``signature`` plus its terminator."""
    return 8 * (len(signature) + 1)


def capacity(image: Image.Image) -> int:
    width, height = image.size
    return width * height


def _byte_bits(value: int) -> Iterator[int]:
    for shift in range(7, -1, -1):
        yield (value >> shift) & 1


def payload_bits(signature: str) -> list:
    bits = []
    for char in signature:
        code = ord(char)
        if code > 0xFF:
            raise MalformedInputError(f"Character {char!r} does not fit in 8 bits")
        bits.extend(_byte_bits(code))
    bits.extend(_byte_bits(TERMINATOR))
    return bits


def _working_mode(image: Image.Image) -> str:
    if "A" in image.getbands() or "transparency" in image.info:
        return "RGBA"
    return "RGB"


def embed(image: Image.Image, signature: str, strict: bool = False) -> Image.Image:
    """Return a copy of ``image`` carrying ``signature`` in its red-channel LSBs.

    If the image has fewer pixels than ``required_pixels(signature)`` the
    trailing bits are dropped (and a warning logged), unless ``strict`` is
    set, in which case ``WatermarkCapacityError`` is raised instead.
    """
    bits = payload_bits(signature)
    available = capacity(image)
    if available < len(bits):
        if strict:
            raise WatermarkCapacityError(
                f"Image has {available} pixels but the watermark needs {len(bits)}"
            )
        logger.warning(
            "Watermark truncated: %d of %d payload bits fit in the image",
            available, len(bits),
        )

    marked = image.convert(_working_mode(image))
    pixels = marked.load()
    width = marked.size[0]
    for index, bit in enumerate(bits[:available]):
        x, y = index % width, index // width
        pixel = pixels[x, y]
        pixels[x, y] = ((pixel[0] & 0xFE) | bit,) + tuple(pixel[1:])
    return marked


def extract(image: Image.Image) -> Optional[str]:
    """Read the red-channel LSB payload; ``None`` when nothing decodes.

    An empty payload (terminator in the first byte) also yields ``None``:
    an empty signature is indistinguishable from no watermark.
    """
    red = image.convert("RGB").getchannel("R").tobytes()

    chars = []
    for offset in range(0, len(red) - 7, 8):
        value = 0
        for channel in red[offset:offset + 8]:
            value = (value << 1) | (channel & 1)
        if value == TERMINATOR:
            break
        chars.append(chr(value))

    return "".join(chars) or None


def open_image(data: bytes) -> Image.Image:
    """Fully decode ``data``; truncated or corrupt images raise ``MalformedInputError``."""
    try:
        image = Image.open(BytesIO(data))
        image.load()
    except _DECODE_ERRORS as exc:
        raise MalformedInputError("Certificate image could not be decoded") from exc
    return image


def embed_png(data: bytes, signature: str, strict: bool = False) -> bytes:
    image = open_image(data)
    buffer = BytesIO()
    embed(image, signature, strict=strict).save(buffer, format="PNG")
    return buffer.getvalue()


def extract_png(data: bytes) -> Optional[str]:
    """Like :func:`extract` for encoded bytes. Undecodable images have no watermark."""
    try:
        image = open_image(data)
    except MalformedInputError as exc:
        logger.info("No watermark found, image could not be decoded: %s", exc)
        return None
    return extract(image)
