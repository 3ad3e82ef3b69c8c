"""
Payload format detection.

DESIGN DECISION: We look at the bytes, not the filename or the client's
content type. Pillow identifies images; PDFs are recognized by their magic
header. Anything Pillow cannot open is reported as unknown and the
extraction client rejects it without calling the model.
"""

from io import BytesIO
from typing import Optional

from PIL import Image, UnidentifiedImageError

PDF_MAGIC = b"%PDF"

# Pillow opens HEIC only with a plugin; recognize the container directly
_HEIF_BRANDS = {b"heic", b"heix", b"hevc", b"hevx", b"mif1", b"msf1"}


def _sniff_heif(data: bytes) -> Optional[str]:
    if len(data) >= 12 and data[4:8] == b"ftyp" and data[8:12] in _HEIF_BRANDS:
        return "image/heic" if data[8:12].startswith(b"he") else "image/heif"
    return None


def detect_content_type(data: bytes) -> Optional[str]:
    """
    Detect the MIME type of a receipt payload.

    Returns:
        The MIME type, or None if the bytes are not a decodable image or PDF
    """
    if not data:
        return None

    if data.startswith(PDF_MAGIC):
        return "application/pdf"

    heif = _sniff_heif(data)
    if heif:
        return heif

    try:
        with Image.open(BytesIO(data)) as img:
            img.verify()
            image_format = img.format
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, SyntaxError, ValueError):
        return None

    if not image_format:
        return None
    return Image.MIME.get(image_format.upper())
