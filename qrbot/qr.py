import base64
import io

import qrcode

DATA_URL_PREFIX = "data:image/"


def is_prerendered(payload: str) -> bool:
    # Some gateways hand out the QR already rendered as an image data URL
    return payload.startswith(DATA_URL_PREFIX)


def build_qr_png(payload: str) -> bytes:
    qr = qrcode.QRCode(
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=10,
        border=4,
    )
    qr.add_data(payload)
    qr.make(fit=True)
    img = qr.make_image(fill_color="#000000", back_color="#FFFFFF").convert("RGB")
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def to_data_url(payload: str) -> str:
    """
    Render a QR payload as a base64 PNG data URL usable as an <img> src.
    Payloads that already are image data URLs are returned unchanged.
    """
    if not payload:
        raise ValueError("empty QR payload")
    if is_prerendered(payload):
        return payload
    return "data:image/png;base64," + base64.b64encode(build_qr_png(payload)).decode("ascii")


def to_ascii(payload: str) -> str:
    """Terminal rendering of the QR, for scanning straight from the logs."""
    qr = qrcode.QRCode(border=1)
    qr.add_data(payload)
    qr.make(fit=True)
    out = io.StringIO()
    qr.print_ascii(out=out)
    return out.getvalue()
