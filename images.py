"""
Image hosting for vehicle pictures.

Routes talk to an ImageHost: upload() returns a descriptor with the public
URL and an opaque public_id, destroy() releases the asset by that id. LocalImageHost
keeps files on local disk (main.py serves them under /uploads);
CloudinaryImageHost puts them on the Cloudinary CDN and is used when
CLOUDINARY_URL is set.
"""
import io
import logging
import os
from typing import Optional, Protocol

import cloudinary.uploader
from bson import ObjectId
from pydantic import BaseModel

from errors import ValidationFailed

logger = logging.getLogger(__name__)

ALLOWED_EXTENSIONS = {".jpg", ".jpeg", ".png", ".gif", ".webp", ".avif"}


class ImageDescriptor(BaseModel):
    url: str
    secure_url: str
    public_id: str
    bytes: int
    format: str


class ImageHost(Protocol):
    def upload(self, filename: str, data: bytes) -> ImageDescriptor: ...

    def destroy(self, public_id: str) -> bool: ...


def checked_extension(filename: str, data: bytes) -> str:
    ext = os.path.splitext(filename or "")[1].lower()
    if ext not in ALLOWED_EXTENSIONS:
        raise ValidationFailed([{"field": "file", "message": "unsupported image type"}])
    if not data:
        raise ValidationFailed([{"field": "file", "message": "empty file"}])
    return ext


class LocalImageHost:
    def __init__(self, upload_dir: str, folder: str = "vehicles", base_url: str = "http://localhost:8000"):
        self.upload_dir = os.path.abspath(upload_dir)
        self.folder = folder.strip("/")
        self.base_url = base_url.rstrip("/")
        os.makedirs(os.path.join(self.upload_dir, self.folder), exist_ok=True)

    def _path_for(self, public_id: str) -> Optional[str]:
        """Resolve a public id to its file, or None if it is unknown or escapes upload_dir."""
        base = os.path.normpath(os.path.join(self.upload_dir, public_id))
        if not base.startswith(self.upload_dir + os.sep):
            return None
        directory, stem = os.path.split(base)
        if not os.path.isdir(directory):
            return None
        for name in os.listdir(directory):
            root, ext = os.path.splitext(name)
            if root == stem and ext.lower() in ALLOWED_EXTENSIONS:
                return os.path.join(directory, name)
        return None

    def upload(self, filename: str, data: bytes) -> ImageDescriptor:
        ext = checked_extension(filename, data)
        public_id = f"{self.folder}/{ObjectId()}"
        dest_path = os.path.join(self.upload_dir, public_id + ext)
        with open(dest_path, "wb") as f:
            f.write(data)

        url = f"{self.base_url}/uploads/{public_id}{ext}"
        logger.info("stored image %s (%d bytes)", public_id, len(data))
        return ImageDescriptor(url=url, secure_url=url, public_id=public_id, bytes=len(data), format=ext.lstrip("."))

    def destroy(self, public_id: str) -> bool:
        path = self._path_for(public_id)
        if path is None:
            return False
        os.remove(path)
        logger.info("removed image %s", public_id)
        return True


class CloudinaryImageHost:
    """Credentials are read by the SDK from CLOUDINARY_URL."""

    def __init__(self, folder: str = "vehicles"):
        self.folder = folder.strip("/")

    def upload(self, filename: str, data: bytes) -> ImageDescriptor:
        checked_extension(filename, data)
        result = cloudinary.uploader.upload(io.BytesIO(data), folder=self.folder, resource_type="image")
        logger.info("uploaded image %s (%s bytes)", result["public_id"], result.get("bytes"))
        return ImageDescriptor(
            url=result["url"],
            secure_url=result["secure_url"],
            public_id=result["public_id"],
            bytes=result["bytes"],
            format=result["format"],
        )

    def destroy(self, public_id: str) -> bool:
        result = cloudinary.uploader.destroy(public_id, resource_type="image")
        # "not found" for ids the CDN does not know
        return result.get("result") == "ok"
