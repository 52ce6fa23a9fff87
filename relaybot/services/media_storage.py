import base64
import binascii
import os
import secrets
import time
from pathlib import Path
from typing import Optional
from urllib.parse import quote

from relaybot.config import settings
from relaybot.logging_config import get_logger

logger = get_logger("media_storage")

STATIC_ROUTE = "/static"


def get_temp_dir() -> Path:
    path = Path(settings.temp_dir)
    path.mkdir(parents=True, exist_ok=True)
    return path


def build_static_url(file_name: str) -> str:
    normalized = (file_name or "").strip().lstrip("/").replace("\\", "/")
    return f"{settings.public_base_url.rstrip('/')}{STATIC_ROUTE}/{quote(normalized, safe='/')}"


def save_buffer_to_temp_file(data: bytes, file_name: str) -> Path:
    target = get_temp_dir() / os.path.basename(file_name)
    target.write_bytes(data)
    return target


def materialize_thumbnail(thumbnail_b64: str) -> Optional[str]:
    """Persist a base64 jpeg thumbnail and return its public URL.

    Returns None when the thumbnail is empty or not valid base64.
    """
    if not thumbnail_b64:
        return None
    try:
        data = base64.b64decode(thumbnail_b64, validate=True)
    except (binascii.Error, ValueError) as e:
        logger.warning(f"Invalid thumbnail payload: {e}")
        return None
    if not data:
        return None

    file_name = f"quoted_image_{int(time.time() * 1000)}_{secrets.token_hex(4)}.jpg"
    save_buffer_to_temp_file(data, file_name)
    url = build_static_url(file_name)
    logger.info("Thumbnail stored as temporary image", extra={"context": {"file_name": file_name}})
    return url
