"""Shared utilities for ServerNap."""

import base64
import io
import logging
from pathlib import Path
from typing import Any, Optional

from PIL import Image


logger = logging.getLogger(__name__)

SERVER_ICON_SIZE = (64, 64)


def validate_port(port: Any, allow_zero: bool = False) -> bool:
    """
    Validate port number.

    Args:
        port: Port number to validate
        allow_zero: Accept 0 (let the OS pick an ephemeral port)

    Returns:
        True if valid port number, False otherwise
    """
    if isinstance(port, bool):
        return False
    try:
        port_int = int(port)
    except (ValueError, TypeError):
        return False
    lower = 0 if allow_zero else 1
    return lower <= port_int <= 65535


def format_duration(seconds: float) -> str:
    """
    Format duration in human readable format.

    Args:
        seconds: Duration in seconds

    Returns:
        Formatted duration string (e.g., "1h 30m 45s")
    """
    if seconds < 0:
        return "0s"

    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = int(seconds % 60)

    parts = []
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")
    if secs > 0 or not parts:
        parts.append(f"{secs}s")

    return " ".join(parts)


def load_server_icon(path: Optional[str]) -> Optional[str]:
    """
    Load a server icon and return it base64-encoded as a 64x64 PNG.

    Images of any other size or format are resized and re-encoded. Returns
    None (with a log message) when no icon is configured or the file cannot
    be read as an image.
    """
    if not path:
        return None

    icon_path = Path(path)
    try:
        with Image.open(icon_path) as image:
            if image.size == SERVER_ICON_SIZE and image.format == 'PNG':
                data = icon_path.read_bytes()
            else:
                logger.info(f"Resizing server icon {icon_path} from {image.width}x{image.height} to 64x64")
                resized = image.convert('RGBA').resize(SERVER_ICON_SIZE, Image.Resampling.BICUBIC)
                buffer = io.BytesIO()
                resized.save(buffer, format='PNG')
                data = buffer.getvalue()
    except OSError as e:
        # Also covers PIL.UnidentifiedImageError
        logger.warning(f"Could not load server icon {icon_path}: {e}")
        return None

    logger.info(f"Loaded server icon from {icon_path}")
    return base64.b64encode(data).decode('ascii')
