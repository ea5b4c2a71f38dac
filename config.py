import logging
import os

import requests


logger = logging.getLogger(__name__)

NGROK_API_URL = os.environ.get("NGROK_API_URL", "http://127.0.0.1:4040/api/tunnels")
DEFAULT_BASE_URL = "http://127.0.0.1:5000"

MAX_SEARCH_DISTANCE_M = float(os.environ.get("MAX_SEARCH_DISTANCE_M", 50000))
MAX_CANDIDATES = int(os.environ.get("MAX_CANDIDATES", 20))
PRESENTED_CANDIDATES = int(os.environ.get("PRESENTED_CANDIDATES", 5))

# Share of the critical-only trauma/ICU bonuses granted to urgent requests.
URGENT_ICU_WEIGHT = float(os.environ.get("URGENT_ICU_WEIGHT", 0.0))

DISPATCH_CENTER_ID = os.environ.get("DISPATCH_CENTER_ID", "DC001")
DISPATCH_CENTER_NAME = os.environ.get("DISPATCH_CENTER_NAME", "Central Emergency Dispatch")
DISPATCH_CENTER_PHONE = os.environ.get("DISPATCH_CENTER_PHONE", "+1-555-AMBULANCE")

DISPATCH_CONFIRM_DELAY = float(os.environ.get("DISPATCH_CONFIRM_DELAY", 3))
EN_ROUTE_DELAY = float(os.environ.get("EN_ROUTE_DELAY", 2))

GEOCODER_TIMEOUT = float(os.environ.get("GEOCODER_TIMEOUT", 5))
NOTIFICATION_WORKERS = int(os.environ.get("NOTIFICATION_WORKERS", 4))

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
LOG_FILE = os.environ.get("LOG_FILE")
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

_base_url = None


def get_ngrok_url():
    try:
        data = requests.get(NGROK_API_URL, timeout=2).json()
    except (requests.RequestException, ValueError):
        return None
    tunnels = data.get("tunnels", [])
    if not tunnels:
        return None
    return tunnels[0].get("public_url")


def get_base_url():
    """Public URL used in tracking links: BASE_URL env, then ngrok, then localhost."""
    global _base_url
    if _base_url is None:
        configured = os.environ.get("BASE_URL")
        if configured:
            _base_url = configured
        else:
            _base_url = get_ngrok_url() or DEFAULT_BASE_URL
            logger.info("Using public base URL %s", _base_url)
    return _base_url


def configure_logging(level=None, log_file=None):
    handlers = [logging.StreamHandler()]
    log_file = log_file or LOG_FILE
    if log_file:
        log_dir = os.path.dirname(log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=(level or LOG_LEVEL).upper(),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )
