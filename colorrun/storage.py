"""Local storage for payment proofs and ID card photos."""
from __future__ import annotations

import base64
import binascii
import re
import uuid
from pathlib import Path

from .errors import ValidationFailed, NotFound
from .settings import settings

URL_PREFIX = "/uploads/"

CONTENT_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".webp": "image/webp",
    ".pdf": "application/pdf",
}

_DATA_URL = re.compile(r"^data:(?P<mime>[\w/+.-]+);base64,(?P<data>.*)$", re.S)

def upload_root() -> Path:
    return Path(settings.UPLOAD_DIR).resolve()

def _extension(filename: str | None, default: str = ".bin") -> str:
    ext = Path(filename or "").suffix.lower()
    ext = re.sub(r"[^a-z0-9.]", "", ext)
    return ext if ext in CONTENT_TYPES else default

def save_bytes(data: bytes, sub_dir: str, filename: str | None = None) -> str:
    """Write ``data`` under the upload root and return its public URL path."""
    if not data:
        raise ValidationFailed("Uploaded file is empty")
    if len(data) > settings.MAX_UPLOAD_BYTES:
        raise ValidationFailed("Uploaded file is too large")
    target_dir = upload_root() / sub_dir
    target_dir.mkdir(parents=True, exist_ok=True)
    name = f"{uuid.uuid4().hex}{_extension(filename)}"
    (target_dir / name).write_bytes(data)
    return f"{URL_PREFIX}{sub_dir}/{name}"

def save_base64(payload: str, sub_dir: str, filename: str | None = None) -> str:
    """Accepts raw base64 or a ``data:<mime>;base64,`` URL."""
    m = _DATA_URL.match(payload.strip())
    if m:
        payload = m.group("data")
        if not filename:
            subtype = m.group("mime").split("/")[-1]
            filename = f"upload.{'jpg' if subtype == 'jpeg' else subtype}"
    try:
        data = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError):
        raise ValidationFailed("Invalid base64 image data")
    return save_bytes(data, sub_dir, filename)

def resolve_upload(relative: str) -> Path:
    root = upload_root()
    path = (root / relative).resolve()
    if root not in path.parents:
        raise NotFound("File not found")
    if not path.is_file():
        raise NotFound("File not found")
    return path

def content_type_for(path: Path) -> str:
    return CONTENT_TYPES.get(path.suffix.lower(), "application/octet-stream")
