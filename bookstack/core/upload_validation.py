"""
Upload validation utilities

- Manifest files: size limit, .csv/.json extension
- Images: size limit, type checked via magic bytes (not the content-type header)

Failures raise ManifestError / UploadTooLargeError, which the API maps to 400 / 413.
"""
import os
from typing import Optional

from fastapi import UploadFile

from bookstack.core.exceptions import ManifestError, UploadTooLargeError

# Allowed image types with their magic bytes
IMAGE_SIGNATURES = {
    "image/jpeg": [
        bytes([0xFF, 0xD8, 0xFF]),
    ],
    "image/png": [
        bytes([0x89, 0x50, 0x4E, 0x47, 0x0D, 0x0A, 0x1A, 0x0A]),
    ],
    "image/gif": [
        b"GIF87a",
        b"GIF89a",
    ],
    "image/webp": [
        # RIFF....WEBP (bytes 0-3 and 8-11)
        b"RIFF",
    ],
}

MANIFEST_EXTENSIONS = (".csv", ".json")


def detect_image_type(content: bytes) -> Optional[str]:
    """Detected MIME type, or None if the bytes are not a supported image."""
    for mime_type, signatures in IMAGE_SIGNATURES.items():
        for sig in signatures:
            if content.startswith(sig):
                if mime_type == "image/webp":
                    if len(content) >= 12 and content[8:12] == b"WEBP":
                        return mime_type
                else:
                    return mime_type
    return None


async def read_limited(file: UploadFile, max_bytes: int) -> bytes:
    """Read an upload, refusing anything over max_bytes without reading it all."""
    content = await file.read(max_bytes + 1)
    if len(content) > max_bytes:
        raise UploadTooLargeError(
            f"File '{file.filename}' exceeds maximum of {max_bytes // (1024 * 1024)}MB",
            limit_bytes=max_bytes,
        )
    return content


async def read_manifest_upload(file: UploadFile, max_bytes: int) -> bytes:
    extension = os.path.splitext(file.filename or "")[1].lower()
    if extension not in MANIFEST_EXTENSIONS:
        raise ManifestError(
            f"Invalid manifest type '{extension or file.filename}'. Only CSV and JSON files are allowed"
        )
    content = await read_limited(file, max_bytes)
    if not content.strip():
        raise ManifestError("Empty batch upload")
    return content


async def read_image_upload(file: UploadFile, max_bytes: int) -> bytes:
    content = await read_limited(file, max_bytes)
    if not content:
        raise ManifestError(f"Empty image file '{file.filename}'")
    if detect_image_type(content) is None:
        raise ManifestError(
            f"File '{file.filename}' does not appear to be a valid image (invalid file signature)"
        )
    return content
