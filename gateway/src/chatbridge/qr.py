from __future__ import annotations

import base64
import io

import qrcode

DATA_URL_PREFIX = "data:image/png;base64,"


def render_qr_data_url(payload: str, *, box_size: int = 10, border: int = 4) -> str:
    """Render ``payload`` as a PNG QR code wrapped in a data URL."""

    code = qrcode.QRCode(box_size=box_size, border=border)
    code.add_data(payload)
    code.make(fit=True)
    image = code.make_image()
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return DATA_URL_PREFIX + base64.b64encode(buffer.getvalue()).decode("ascii")


def render_challenge(challenge: str, kind: str = "qr") -> str:
    # Pairing codes are typed in by hand, so they are already display-ready.
    if kind == "pairing_code":
        return challenge
    return render_qr_data_url(challenge)
