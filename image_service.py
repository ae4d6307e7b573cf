"""
Thin client for the ImageKit upload API.

Only two calls are needed: upload a file and delete a file by id. Both use
HTTP basic auth with the private key as the username.
"""
import logging
import time
from typing import Optional

import requests

import config
from errors import Internal, InvalidArgument

logger = logging.getLogger(__name__)

TIMEOUT = 30


def upload_image(content: bytes, filename: Optional[str] = None, content_type: Optional[str] = None) -> dict:
    if not content:
        raise InvalidArgument("No valid file buffer found for upload")
    if not config.IMAGEKIT_PRIVATE_KEY:
        raise Internal("Image hosting is not configured")

    filename = filename or f"image_{int(time.time() * 1000)}"
    try:
        resp = requests.post(
            config.IMAGEKIT_UPLOAD_URL,
            auth=(config.IMAGEKIT_PRIVATE_KEY, ""),
            files={"file": (filename, content, content_type or "application/octet-stream")},
            data={
                "fileName": filename,
                "folder": config.IMAGEKIT_FOLDER,
                "useUniqueFileName": "true",
                "isPrivateFile": "false",
                "responseFields": "url,thumbnail,fileId,name",
            },
            timeout=TIMEOUT,
        )
        resp.raise_for_status()
        result = resp.json()
    except (requests.RequestException, ValueError) as exc:
        logger.error("Image upload failed: %s", exc)
        raise Internal("Image upload to ImageKit failed")

    return {
        "url": result.get("url", ""),
        "thumbnail": result.get("thumbnailUrl") or "",
        "id": result.get("fileId") or "",
    }


def delete_image(file_id: str) -> bool:
    """Best-effort removal of a hosted file."""
    if not file_id or not config.IMAGEKIT_PRIVATE_KEY:
        return False
    try:
        resp = requests.delete(
            f"{config.IMAGEKIT_API_URL}/{file_id}",
            auth=(config.IMAGEKIT_PRIVATE_KEY, ""),
            timeout=TIMEOUT,
        )
        resp.raise_for_status()
    except requests.RequestException as exc:
        logger.warning("Failed to delete image %s: %s", file_id, exc)
        return False
    return True
