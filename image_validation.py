"""
Recipe image validation module.
Validates MIME types, file extensions, sizes and image dimensions, and
prepares the ``recipe_images`` rows for accepted uploads.
"""

import io
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import magic
from fastapi import UploadFile
from PIL import Image, UnidentifiedImageError


ALLOWED_EXTENSIONS = {'.jpg', '.jpeg', '.png', '.webp', '.gif'}
MIME_TO_EXTENSIONS = {
    'image/jpeg': {'.jpg', '.jpeg'},
    'image/png': {'.png'},
    'image/webp': {'.webp'},
    'image/gif': {'.gif'},
}

MAX_IMAGE_SIZE = 5 * 1024 * 1024  # 5MB in bytes
MAX_IMAGES_PER_UPLOAD = 5


class ImageValidationError(Exception):
    """Raised when an uploaded recipe image is rejected."""
    pass


def validate_image_extension(filename: Optional[str]) -> str:
    """
    Validate file extension against whitelist.

    Args:
        filename: Name of the uploaded file

    Returns:
        The lower-cased extension, including the dot

    Raises:
        ImageValidationError: If extension is not allowed
    """
    file_ext = Path(filename or "").suffix.lower()
    if file_ext not in ALLOWED_EXTENSIONS:
        raise ImageValidationError(
            f"File extension '{file_ext}' is not allowed. "
            f"Allowed extensions: {', '.join(sorted(ALLOWED_EXTENSIONS))}"
        )
    return file_ext


def detect_mime_type(file_content: bytes) -> str:
    try:
        return magic.Magic(mime=True).from_buffer(file_content)
    except Exception as e:
        raise ImageValidationError(f"Unable to detect MIME type: {str(e)}")


def validate_image_mime(file_content: bytes, file_ext: str) -> str:
    """
    Validate MIME type using python-magic and check it matches the extension.

    Raises:
        ImageValidationError: If MIME type is not an allowed image type
    """
    detected_mime = detect_mime_type(file_content)

    expected_exts = MIME_TO_EXTENSIONS.get(detected_mime)
    if expected_exts is None:
        raise ImageValidationError(
            f"MIME type '{detected_mime}' is not allowed. "
            f"Allowed types: {', '.join(sorted(MIME_TO_EXTENSIONS))}"
        )
    if file_ext not in expected_exts:
        raise ImageValidationError(
            f"MIME type '{detected_mime}' does not match file extension '{file_ext}'"
        )
    return detected_mime


def validate_image_size(file_content: bytes, max_size: int = MAX_IMAGE_SIZE) -> int:
    file_size = len(file_content)
    if file_size == 0:
        raise ImageValidationError("File is empty")
    if file_size > max_size:
        raise ImageValidationError(
            f"File size {file_size} bytes exceeds maximum limit of {max_size} bytes"
        )
    return file_size


def read_image_dimensions(file_content: bytes) -> Tuple[int, int]:
    """Return ``(width, height)`` of an encoded image."""
    try:
        with Image.open(io.BytesIO(file_content)) as img:
            return img.size
    except (UnidentifiedImageError, OSError) as e:
        raise ImageValidationError(f"Unable to read image: {str(e)}")


def inspect_image(filename: Optional[str], file_content: bytes,
                  max_size: int = MAX_IMAGE_SIZE) -> Dict[str, Any]:
    """
    Run every image check and collect the facts needed for storage.

    Raises:
        ImageValidationError: On the first failing check
    """
    file_size = validate_image_size(file_content, max_size)
    file_ext = validate_image_extension(filename)
    mime_type = validate_image_mime(file_content, file_ext)
    width, height = read_image_dimensions(file_content)
    return {
        "filename": filename,
        "extension": file_ext,
        "file_size": file_size,
        "mime_type": mime_type,
        "width": width,
        "height": height,
    }


def storage_path(recipe_id: str, index: int, file_ext: str, now_ms: int) -> str:
    return f"{recipe_id}/{now_ms}-{index}{file_ext}"


def build_image_rows(
    recipe_id: str,
    uploads: Sequence[UploadFile],
    *,
    max_size: int = MAX_IMAGE_SIZE,
    max_images: int = MAX_IMAGES_PER_UPLOAD,
    clock: Callable[[], float] = time.time,
) -> List[Dict[str, Any]]:
    """
    Validate uploaded images and build one ``recipe_images`` row per file.

    The first image becomes the primary one; ``sort_order`` follows upload
    order.

    Args:
        recipe_id: Recipe the images belong to
        uploads: FastAPI UploadFile objects in display order
        max_size: Per-image size limit in bytes
        max_images: Maximum number of images in one upload

    Returns:
        Row dicts, empty when nothing was uploaded

    Raises:
        ImageValidationError: If any image fails validation
    """
    if len(uploads) > max_images:
        raise ImageValidationError(
            f"Too many images: {len(uploads)} uploaded, at most {max_images} allowed"
        )

    now_ms = int(clock() * 1000)
    rows = []
    for index, upload in enumerate(uploads):
        info = inspect_image(upload.filename, upload.file.read(), max_size)
        rows.append({
            "recipe_id": recipe_id,
            "storage_path": storage_path(recipe_id, index, info["extension"], now_ms),
            "alt_text": upload.filename,
            "file_size": info["file_size"],
            "mime_type": info["mime_type"],
            "width": info["width"],
            "height": info["height"],
            "is_primary": index == 0,
            "sort_order": index,
        })
    return rows
