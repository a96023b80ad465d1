"""
Image ingestion and derivatives.

Uploaded product images are stored once under a sanitized key: rasters are
transcoded to WebP, GIF and WebP are kept as uploaded. Thumbnails are a
second, smaller WebP next to the full-size one (``<stem>_thumb.webp``).

All methods here block; async callers run them in a worker thread.
"""

import logging
import posixpath
from dataclasses import dataclass, field
from io import BytesIO
from typing import Optional

from PIL import Image, ImageOps, UnidentifiedImageError

from catalog_sync.exceptions import ImageProcessingError, ObjectStoreError
from catalog_sync.object_store import IMMUTABLE_CACHE_CONTROL, content_type_for

logger = logging.getLogger(__name__)

PLACEHOLDER_IMAGE_URL = "/placeholder.svg"

IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".gif", ".webp")
RASTER_EXTENSIONS = (".jpg", ".jpeg", ".png")
VERBATIM_EXTENSIONS = (".gif", ".webp")
WEBP_EXTENSION = ".webp"
THUMBNAIL_SUFFIX = "_thumb.webp"


def _extension(path: str) -> str:
    return posixpath.splitext(path)[1].lower()


def is_image_filename(filename: str) -> bool:
    return _extension(filename or "") in IMAGE_EXTENSIONS


def sanitize_key(path: str) -> str:
    """
    Flatten an ERP file path into a single safe object key.

    Backslashes become slashes, empty, ``.`` and ``..`` segments are
    dropped and the remaining segments are joined with ``_``.

    Example:
        >>> sanitize_key("import_files\\\\ab/../photo.jpg")
        'import_files_ab_photo.jpg'
    """
    segments = (path or "").replace("\\", "/").split("/")
    return "_".join(s for s in segments if s not in ("", ".", ".."))


def web_key(key: str) -> str:
    """Key of the web derivative: rasters map to ``.webp``, others unchanged."""
    if _extension(key) in RASTER_EXTENSIONS:
        return posixpath.splitext(key)[0] + WEBP_EXTENSION
    return key


def thumbnail_key(key: str) -> str:
    return posixpath.splitext(key)[0] + THUMBNAIL_SUFFIX


def is_thumbnail(key: str) -> bool:
    return key.lower().endswith(THUMBNAIL_SUFFIX)


def thumbnail_url_for(url: Optional[str]) -> Optional[str]:
    """
    Derive the thumbnail URL from a full-size image URL.

    Returns:
        ``<stem>_thumb.webp`` for WebP/JPEG/PNG URLs, None for anything else
    """
    if not url:
        return None
    if _extension(url) not in (WEBP_EXTENSION,) + RASTER_EXTENSIONS:
        return None
    return posixpath.splitext(url)[0] + THUMBNAIL_SUFFIX


def _prepare(image: Image.Image) -> Image.Image:
    image = ImageOps.exif_transpose(image)
    if image.mode in ("RGB", "RGBA"):
        return image
    if image.mode in ("LA", "PA") or "transparency" in image.info:
        return image.convert("RGBA")
    return image.convert("RGB")


def transcode_to_webp(data: bytes, quality: int = 85, filename: str = "") -> bytes:
    """
    Re-encode image bytes as WebP.

    Raises:
        ImageProcessingError: If the bytes are not a decodable image
    """
    try:
        with Image.open(BytesIO(data)) as image:
            output = BytesIO()
            _prepare(image).save(output, format="WEBP", quality=quality)
    except (UnidentifiedImageError, OSError, ValueError) as e:
        raise ImageProcessingError(
            message=f"Cannot convert image to WebP: {e}",
            filename=filename,
            original_exception=e,
        )
    return output.getvalue()


def make_thumbnail(data: bytes, width: int = 300, quality: int = 70, filename: str = "") -> bytes:
    """
    Build an aspect-preserving WebP thumbnail no wider than ``width``.

    Raises:
        ImageProcessingError: If the bytes are not a decodable image
    """
    try:
        with Image.open(BytesIO(data)) as image:
            image = _prepare(image)
            if image.width > width:
                height = max(1, round(image.height * width / image.width))
                image = image.resize((width, height), Image.Resampling.LANCZOS)
            output = BytesIO()
            image.save(output, format="WEBP", quality=quality)
    except (UnidentifiedImageError, OSError, ValueError) as e:
        raise ImageProcessingError(
            message=f"Cannot build thumbnail: {e}",
            filename=filename,
            original_exception=e,
        )
    return output.getvalue()


@dataclass
class BatchReport:
    """Outcome of one bounded batch over stored images."""
    converted: int = 0
    failed: int = 0
    remaining: int = 0
    urls: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "converted": self.converted,
            "failed": self.failed,
            "remaining": self.remaining,
        }


class ImageUrlResolver:
    """
    Maps an image reference from a feed to the public URL of its stored
    derivative. Results are memoized in ``cache`` for the resolver's lifetime.

    Args:
        store: ObjectStore or LocalObjectStore the images live in
        prefix: Key prefix for product images
        placeholder: URL returned for empty references
        cache: Memo dict; a fresh one is created when omitted
    """

    def __init__(
        self,
        store,
        prefix: str = "products",
        placeholder: str = PLACEHOLDER_IMAGE_URL,
        cache: Optional[dict] = None,
    ):
        self.store = store
        self.prefix = prefix.strip("/")
        self.placeholder = placeholder
        self.cache = {} if cache is None else cache

    def object_key(self, path: str) -> str:
        return f"{self.prefix}/{web_key(sanitize_key(path))}"

    def resolve(self, path: Optional[str]) -> str:
        if not path or not path.strip():
            return self.placeholder
        path = path.strip()
        if path.startswith(("http://", "https://")):
            return path
        cached = self.cache.get(path)
        if cached is not None:
            return cached
        url = self.store.public_url(self.object_key(path))
        self.cache[path] = url
        return url


class ImagePipeline:
    """
    Stores uploaded images and builds their derivatives.

    Args:
        store: ObjectStore or LocalObjectStore
        prefix: Key prefix for product images
        webp_quality: Quality for full-size WebP derivatives
        thumbnail_width: Maximum thumbnail width in pixels
        thumbnail_quality: Quality for thumbnails
    """

    def __init__(
        self,
        store,
        prefix: str = "products",
        webp_quality: int = 85,
        thumbnail_width: int = 300,
        thumbnail_quality: int = 70,
    ):
        self.store = store
        self.prefix = prefix.strip("/")
        self.webp_quality = webp_quality
        self.thumbnail_width = thumbnail_width
        self.thumbnail_quality = thumbnail_quality

    @classmethod
    def from_settings(cls, store, settings) -> "ImagePipeline":
        return cls(
            store,
            prefix=settings.object_store_prefix,
            webp_quality=settings.webp_quality,
            thumbnail_width=settings.thumbnail_width,
            thumbnail_quality=settings.thumbnail_quality,
        )

    def _key(self, name: str) -> str:
        return f"{self.prefix}/{name}"

    def ingest(self, filename: str, data: bytes) -> str:
        """
        Store an uploaded image and return its public URL.

        Raises:
            ImageProcessingError: If the name is empty or the image is undecodable
            ObjectStoreError: If the write fails
        """
        name = sanitize_key(filename)
        if not name:
            raise ImageProcessingError(message="Empty image filename", filename=filename)

        if _extension(name) in VERBATIM_EXTENSIONS:
            body = data
        else:
            body = transcode_to_webp(data, self.webp_quality, filename)
            name = web_key(name)

        key = self._key(name)
        url = self.store.upload(
            key,
            body,
            content_type=content_type_for(key),
            cache_control=IMMUTABLE_CACHE_CONTROL,
        )
        logger.info(
            f"Stored image {filename} ({len(data)} -> {len(body)} bytes)",
            extra={"filename": filename, "key": key},
        )
        return url

    def _list(self) -> list[str]:
        return self.store.list_keys(f"{self.prefix}/")

    def thumbnail_urls(self) -> set:
        """Public URLs of every stored thumbnail."""
        return {self.store.public_url(key) for key in self._list() if is_thumbnail(key)}

    def generate_thumbnails(self, limit: int = 50) -> BatchReport:
        """
        Create thumbnails for up to ``limit`` stored WebP images that lack one.

        Returns:
            BatchReport; ``urls`` maps each source image URL to its thumbnail URL
        """
        keys = self._list()
        existing = set(keys)
        pending = sorted(
            key for key in keys
            if _extension(key) == WEBP_EXTENSION
            and not is_thumbnail(key)
            and thumbnail_key(key) not in existing
        )
        batch = pending[:limit]
        report = BatchReport(remaining=len(pending) - len(batch))

        for key in batch:
            try:
                thumbnail = make_thumbnail(
                    self.store.download(key),
                    self.thumbnail_width,
                    self.thumbnail_quality,
                    key,
                )
                url = self.store.upload(
                    thumbnail_key(key),
                    thumbnail,
                    content_type="image/webp",
                    cache_control=IMMUTABLE_CACHE_CONTROL,
                )
            except (ImageProcessingError, ObjectStoreError) as e:
                report.failed += 1
                logger.warning(f"Thumbnail failed for {key}: {e}", extra={"key": key})
                continue
            report.converted += 1
            report.urls[self.store.public_url(key)] = url

        logger.info(
            f"Thumbnail batch: {report.converted} created, {report.failed} failed, "
            f"{report.remaining} remaining"
        )
        return report

    def convert_pending(self, limit: int = 50) -> BatchReport:
        """
        Convert up to ``limit`` stored JPEG/PNG images that have no WebP sibling.

        Returns:
            BatchReport; ``urls`` maps each legacy URL to its WebP URL
        """
        keys = self._list()
        existing = set(keys)
        pending = sorted(
            key for key in keys
            if _extension(key) in RASTER_EXTENSIONS and web_key(key) not in existing
        )
        batch = pending[:limit]
        report = BatchReport(remaining=len(pending) - len(batch))

        for key in batch:
            try:
                body = transcode_to_webp(self.store.download(key), self.webp_quality, key)
                url = self.store.upload(
                    web_key(key),
                    body,
                    content_type="image/webp",
                    cache_control=IMMUTABLE_CACHE_CONTROL,
                )
            except (ImageProcessingError, ObjectStoreError) as e:
                report.failed += 1
                logger.warning(f"WebP conversion failed for {key}: {e}", extra={"key": key})
                continue
            report.converted += 1
            report.urls[self.store.public_url(key)] = url

        logger.info(
            f"WebP batch: {report.converted} converted, {report.failed} failed, "
            f"{report.remaining} remaining"
        )
        return report
