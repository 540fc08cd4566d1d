"""Inline-data helpers: image sniffing and data-URL assembly."""
from PIL import Image, UnidentifiedImageError
from urllib.parse import quote
import base64
import io


PIL_FORMAT_MIME = {
    'PNG': 'image/png',
    'JPEG': 'image/jpeg',
    'GIF': 'image/gif',
    'WEBP': 'image/webp',
    'BMP': 'image/bmp',
    'TIFF': 'image/tiff',
    'ICO': 'image/x-icon',
}


def sniff_image_mime(body: bytes) -> str | None:
    """
    Identify an image from its bytes alone.
    Used when a server labels an image as application/octet-stream.
    """
    if not body:
        return None
    try:
        with Image.open(io.BytesIO(body)) as img:
            return PIL_FORMAT_MIME.get(img.format or '') or (Image.MIME.get(img.format or '') or None)
    except (UnidentifiedImageError, OSError, ValueError):
        return None


def bytes_to_data_url(body: bytes, mime: str, file_name: str | None = None) -> str:
    """
    Encode bytes as a self-contained data URL.
    The optional name rides along as a percent-encoded ``name=`` parameter.
    """
    encoded = base64.b64encode(body).decode()
    if file_name:
        return f"data:{mime};name={quote(file_name, safe='')};base64,{encoded}"
    return f"data:{mime};base64,{encoded}"
