import os
from typing import Iterable, Optional, Tuple
from uuid import uuid4

from werkzeug.utils import secure_filename

ALLOWED_IMAGE_EXTENSIONS = {"png", "jpg", "jpeg", "gif", "webp"}


def allowed_image_extension(filename: str, allowed: Iterable[str] = ALLOWED_IMAGE_EXTENSIONS) -> bool:
    if "." not in filename:
        return False
    extension = filename.rsplit(".", 1)[1].lower()
    return extension in set(allowed)


def save_uploaded_image(
    image_file, upload_folder: str, allowed: Iterable[str] = ALLOWED_IMAGE_EXTENSIONS
) -> Tuple[Optional[str], Optional[str]]:
    """Store an uploaded image under a random name; returns (path, error)."""
    if not image_file or not getattr(image_file, "filename", ""):
        return None, "An image file is required."

    original_filename = secure_filename(image_file.filename)
    if not original_filename:
        return None, "Please choose a valid file name."

    if not allowed_image_extension(original_filename, allowed):
        return (
            None,
            "Unsupported image format. Upload PNG, JPG, JPEG, GIF, or WEBP files.",
        )

    extension = os.path.splitext(original_filename)[1].lower()
    destination = os.path.join(upload_folder, f"{uuid4().hex}{extension}")

    try:
        os.makedirs(upload_folder, exist_ok=True)
        image_file.save(destination)
    except OSError:
        return None, "We could not store the uploaded image. Please try again."

    return destination, None


def remove_local_file(path: Optional[str]):
    if not path:
        return
    try:
        os.remove(path)
    except FileNotFoundError:
        return
    except OSError:
        return
