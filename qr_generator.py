import logging
import os

import qrcode

from config import get_base_url


logger = logging.getLogger(__name__)

QR_OUTPUT_DIR = os.environ.get("QR_OUTPUT_DIR", "static/qrcodes")


def tracking_url(emergency_id, base_url=None):
    effective_base = (base_url or get_base_url()).rstrip("/")
    return f"{effective_base}/api/emergency/status/{emergency_id}"


def generate_tracking_qr(emergency_id, base_url=None, output_dir=None):
    """
    Generate a QR code pointing at the emergency's live status endpoint.
    Returns the path of the saved PNG.
    """
    output_dir = output_dir or QR_OUTPUT_DIR
    os.makedirs(output_dir, exist_ok=True)
    filename = os.path.join(output_dir, f"emergency_{emergency_id}.png")

    qr = qrcode.QRCode(version=1, box_size=10, border=4)
    qr.add_data(tracking_url(emergency_id, base_url))
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    img.save(filename)

    logger.info("Tracking QR for %s saved to %s", emergency_id, filename)
    return filename
