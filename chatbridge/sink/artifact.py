"""Rendering of login artifacts as scannable images."""

from __future__ import annotations

import base64
import io

import qrcode

DATA_URL_PREFIX = "data:image/png;base64,"


def build_qr_png(artifact: str, box_size: int = 10, border: int = 4) -> bytes:
    """Render an artifact as a PNG QR code."""
    qr = qrcode.QRCode(
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=box_size,
        border=border,
    )
    qr.add_data(artifact)
    qr.make(fit=True)
    img = qr.make_image(fill_color="#000000", back_color="#FFFFFF").convert("RGB")
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def encode_artifact(artifact: str) -> str:
    """Render an artifact as a ``data:image/png;base64,...`` URL.

    Raises:
        ValueError: If the artifact is empty
    """
    if not artifact:
        raise ValueError("Cannot encode an empty artifact")
    return DATA_URL_PREFIX + base64.b64encode(build_qr_png(artifact)).decode("ascii")
