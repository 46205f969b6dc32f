# storage.py - Storage path validation and signed download URLs
# Files are stored by an external object store; this service only records
# their storage path and hands out HMAC-signed, time-limited download links.

import os
import re
import hmac
import time
import uuid
import hashlib
import secrets
import logging
from typing import Optional
from urllib.parse import quote, urlencode

logger = logging.getLogger("launchpad.storage")

FILE_STORAGE_SECRET = os.getenv("FILE_STORAGE_SECRET", "")
if not FILE_STORAGE_SECRET:
    FILE_STORAGE_SECRET = secrets.token_urlsafe(48)
    logger.warning("FILE_STORAGE_SECRET not set. Generated ephemeral key; download links expire on restart.")

FILE_DOWNLOAD_BASE_URL = os.getenv("FILE_DOWNLOAD_BASE_URL", "/files").rstrip("/")
FILE_URL_TTL_SECONDS = int(os.getenv("FILE_URL_TTL_SECONDS", "3600"))

_DRIVE_LETTER = re.compile(r"^[A-Za-z]:")
_FORBIDDEN_CHARS = re.compile(r'[<>:"|?*\\]')


class InvalidStoragePath(ValueError):
    pass


def validate_storage_path(path: str) -> str:
    """Reject traversal and absolute paths, returning the path with duplicate slashes collapsed."""
    if not path or not isinstance(path, str):
        raise InvalidStoragePath("Storage path is empty")
    if "\0" in path:
        raise InvalidStoragePath("Storage path contains a NUL byte")
    if path.startswith("/") or path.startswith("\\") or _DRIVE_LETTER.match(path):
        raise InvalidStoragePath("Storage path must be relative")
    if "\\" in path:
        raise InvalidStoragePath("Storage path must use forward slashes")
    segments = [s for s in path.split("/") if s]
    if any(s in ("..", ".") for s in segments):
        raise InvalidStoragePath("Storage path must not contain relative segments")
    if not segments:
        raise InvalidStoragePath("Storage path is empty")
    return "/".join(segments)


def sanitize_filename(name: str) -> str:
    cleaned = _FORBIDDEN_CHARS.sub("", (name or "").replace("/", "").replace("\0", ""))
    cleaned = cleaned.replace("..", "").strip().strip(".")
    return cleaned or "file"


def build_storage_path(space_id: str, block_id: str, filename: str) -> str:
    return f"{space_id}/{block_id}/{uuid.uuid4().hex[:12]}-{sanitize_filename(filename)}"


def is_within_space(path: str, space_id: str) -> bool:
    return validate_storage_path(path).startswith(f"{space_id}/")


def _signature(path: str, expires: int) -> str:
    message = f"{path}:{expires}".encode("utf-8")
    return hmac.new(FILE_STORAGE_SECRET.encode("utf-8"), message, hashlib.sha256).hexdigest()


def sign_download_url(storage_path: str, expires_in: Optional[int] = None, now: Optional[float] = None) -> str:
    path = validate_storage_path(storage_path)
    expires = int((now if now is not None else time.time()) + (expires_in or FILE_URL_TTL_SECONDS))
    query = urlencode({"expires": expires, "signature": _signature(path, expires)})
    return f"{FILE_DOWNLOAD_BASE_URL}/{quote(path)}?{query}"


def verify_download_signature(
    storage_path: str, expires: int, signature: str, now: Optional[float] = None,
) -> bool:
    try:
        path = validate_storage_path(storage_path)
    except InvalidStoragePath:
        return False
    if int(expires) < (now if now is not None else time.time()):
        return False
    return hmac.compare_digest(_signature(path, int(expires)), signature or "")
