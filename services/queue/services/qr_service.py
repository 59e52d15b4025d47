"""Render del QR del ticket"""
import io
import logging

import qrcode

logger = logging.getLogger(__name__)


def render_ticket_qr_png(token: str, box_size: int = 10, border: int = 4) -> bytes:
    """
    Generar la imagen PNG del QR que el kiosko escanea

    El contenido es el token firmado del ticket; caduca con él.
    """
    qr = qrcode.QRCode(
        version=None,
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=box_size,
        border=border,
    )
    qr.add_data(token)
    qr.make(fit=True)

    img = qr.make_image(fill_color="black", back_color="white")

    buffer = io.BytesIO()
    img.save(buffer, format="PNG")
    png = buffer.getvalue()

    logger.debug(f"QR generado ({len(png)} bytes)")
    return png
