import hashlib
import logging
import time
from typing import Dict, Optional, Tuple

import requests

from .errors import ExternalServiceError

logger = logging.getLogger(__name__)

CLOUDINARY_API_BASE = "https://api.cloudinary.com/v1_1"
REQUEST_TIMEOUT_SECONDS = 60


def parse_size(value: str) -> Tuple[int, int]:
    """`"400X420"` -> `(400, 420)`."""
    width, _, height = str(value or "").upper().partition("X")
    try:
        return int(width), int(height)
    except ValueError:
        raise ValueError(f"Image size must look like 400X420, got {value!r}")


def sign_params(params: Dict[str, object], api_secret: str) -> str:
    to_sign = "&".join(
        f"{key}={params[key]}" for key in sorted(params) if params[key] not in (None, "")
    )
    return hashlib.sha1(f"{to_sign}{api_secret}".encode("utf-8")).hexdigest()


class CloudinaryStorage:
    """Signed image upload and destroy against the Cloudinary REST API."""

    def __init__(
        self,
        cloud_name: str,
        api_key: str,
        api_secret: str,
        folder: str,
        public_id_prefix: str,
        big_size: str,
    ):
        self.cloud_name = cloud_name
        self.api_key = api_key
        self.api_secret = api_secret
        self.folder = folder
        self.public_id_prefix = public_id_prefix
        self.big_size = big_size

    def transformation(self) -> str:
        width, height = parse_size(self.big_size)
        return f"c_fill,h_{height},w_{width}/q_auto"

    def _signed(self, params: Dict[str, object]) -> Dict[str, object]:
        signed = dict(params, timestamp=int(time.time()))
        signed["signature"] = sign_params(signed, self.api_secret)
        signed["api_key"] = self.api_key
        return signed

    def _post(self, action: str, data: Dict[str, object], files: Optional[Dict] = None) -> Dict:
        if not (self.cloud_name and self.api_key and self.api_secret):
            raise ExternalServiceError("Image storage is not configured.")

        url = f"{CLOUDINARY_API_BASE}/{self.cloud_name}/image/{action}"
        try:
            response = requests.post(url, data=data, files=files, timeout=REQUEST_TIMEOUT_SECONDS)
        except requests.RequestException as exc:
            logger.error("Cloudinary %s failed: %s", action, exc)
            raise ExternalServiceError("Failed to reach image storage.")

        try:
            body = response.json()
        except ValueError:
            body = {}
        if response.status_code >= 300:
            error_message = (body.get("error") or {}).get("message") or response.text
            logger.error("Cloudinary %s returned %s: %s", action, response.status_code, error_message)
            raise ExternalServiceError(f"Image storage error: {error_message}")
        return body

    def upload(self, file_path: str) -> Dict:
        params = self._signed(
            {
                "folder": self.folder,
                "public_id": f"{self.public_id_prefix}{int(time.time() * 1000)}",
                "transformation": self.transformation(),
            }
        )
        with open(file_path, "rb") as image_file:
            return self._post("upload", params, files={"file": image_file})

    def destroy(self, public_id: str) -> Dict:
        params = self._signed({"public_id": public_id, "invalidate": "true"})
        return self._post("destroy", params)
