import logging
import mimetypes
import os
import re
import uuid
from datetime import datetime
from pathlib import Path
from typing import BinaryIO, Iterable, List, Optional, Tuple
from urllib.parse import urlparse
from zoneinfo import ZoneInfo

import requests

from .errors import RemoteFetchError

logger = logging.getLogger("imagehost.storage")

CHUNK_SIZE_BYTES = 64 * 1024
TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"
TEMP_SUFFIX = ".part"
# Leaves room for TEMP_SUFFIX within the usual 255-byte name limit.
MAX_FILENAME_BYTES = 255 - len(TEMP_SUFFIX)

IMAGE_FILENAME_PATTERN = re.compile(r"\.(gif|jpe?g|tiff?|png|webp|bmp|svg)$", re.IGNORECASE)

UPLOAD_EXTENSIONS = ("png", "jpg", "jpeg", "gif", "webp", "bmp", "tiff", "svg")
UPLOAD_MIMETYPES = frozenset(
    {
        "image/png",
        "image/jpg",
        "image/jpeg",
        "image/gif",
        "image/webp",
        "image/bmp",
        "image/tiff",
        "image/svg+xml",
    }
)
SUPPORTED_FORMATS_MESSAGE = "Supported file formats: " + " ".join(
    f".{extension}" for extension in UPLOAD_EXTENSIONS
)

EXTENSION_BY_CONTENT_TYPE = {
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/pjpeg": ".jpg",
    "image/gif": ".gif",
    "image/webp": ".webp",
    "image/bmp": ".bmp",
    "image/x-ms-bmp": ".bmp",
    "image/tiff": ".tiff",
    "image/svg+xml": ".svg",
}

_CONTROL_CHAR_PATTERN = re.compile(r"[\x00-\x1f\x7f-\x9f]")


class SizeLimitExceeded(ValueError):
    """Raised when a streamed write grows past its byte limit."""

    def __init__(self, limit: int) -> None:
        super().__init__(f"File size exceeds maximum allowed size ({limit} bytes)")
        self.limit = limit


def is_image_filename(name: str) -> bool:
    return bool(IMAGE_FILENAME_PATTERN.search(name))


def file_extension(name: str) -> str:
    """Return the lower-cased text after the last dot, or an empty string."""

    return name.rsplit(".", 1)[1].lower() if "." in name else ""


def format_timestamp(timezone: str, now: Optional[datetime] = None) -> str:
    moment = now or datetime.now(ZoneInfo(timezone))
    if moment.tzinfo is not None:
        moment = moment.astimezone(ZoneInfo(timezone))
    return moment.strftime(TIMESTAMP_FORMAT)


def client_basename(original_name: str) -> str:
    """Strip any client-side directory part and control characters."""

    name = original_name.replace("\\", "/").rsplit("/", 1)[-1]
    return _CONTROL_CHAR_PATTERN.sub("", name).strip()


def upload_filename(original_name: str, stamp: str) -> str:
    """Build ``<stem>-<stamp><extension>`` for a locally uploaded file.

    The stem ends at the first dot and the extension runs from the first dot
    to the end, so ``photo.tar.png`` becomes ``photo-<stamp>.tar.png``.
    Long stems are cut so the result fits in MAX_FILENAME_BYTES.
    """

    name = client_basename(original_name)
    stem, dot, rest = name.partition(".")
    suffix = f"-{stamp}{dot}{rest}"
    room = MAX_FILENAME_BYTES - len(suffix.encode("utf-8"))
    if room > 0:
        stem = stem.encode("utf-8")[:room].decode("utf-8", "ignore")
    if not stem:
        stem = "image"
    return f"{stem}{suffix}"


def extension_for_content_type(content_type: Optional[str]) -> Optional[str]:
    if not content_type:
        return None
    essence = content_type.split(";", 1)[0].strip().lower()
    extension = EXTENSION_BY_CONTENT_TYPE.get(essence) or mimetypes.guess_extension(essence)
    if not extension or not is_image_filename(extension):
        return None
    return extension


def remote_filename(extension: str, stamp: str) -> str:
    return f"{uuid.uuid4().hex}-{stamp}{extension}"


class ImageStore:
    """Filesystem-backed image storage. The directory listing is the database."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def ensure_directory(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)

    def _scan(self) -> Iterable[Tuple[str, int]]:
        with os.scandir(self.root) as entries:
            for entry in entries:
                if not is_image_filename(entry.name):
                    continue
                try:
                    if not entry.is_file():
                        continue
                    modified = entry.stat().st_mtime_ns
                except FileNotFoundError:
                    # Removed between listing and stat.
                    continue
                yield entry.name, modified

    def list_images(self) -> List[str]:
        """Return image filenames, newest first.

        Raises OSError when the storage directory cannot be read.
        """

        stamped = sorted(self._scan(), key=lambda item: (-item[1], item[0]))
        return [name for name, _ in stamped]

    def path_for(self, name: Optional[str]) -> Optional[Path]:
        """Resolve *name* to a path directly inside the storage directory.

        Returns None for anything that is not a plain filename.
        """

        if not name or name in {".", ".."}:
            return None
        if "/" in name or "\\" in name or "\x00" in name:
            return None
        root = self.root.resolve()
        candidate = (root / name).resolve()
        if candidate.parent != root:
            return None
        return candidate

    def exists(self, name: Optional[str]) -> bool:
        path = self.path_for(name)
        return path is not None and path.is_file()

    def delete(self, name: Optional[str]) -> bool:
        path = self.path_for(name)
        if path is None or not path.is_file():
            return False
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        logger.info("image_deleted file_name=%s", name)
        return True

    def write_chunks(
        self, name: str, chunks: Iterable[bytes], max_bytes: Optional[int] = None
    ) -> int:
        """Stream *chunks* into *name* through a temporary file.

        The destination only appears once every chunk has been written.
        Raises SizeLimitExceeded (leaving nothing behind) past *max_bytes*.
        """

        path = self.path_for(name)
        if path is None:
            raise ValueError(f"Invalid image filename: {name!r}")
        temp_path: Optional[Path] = path.with_name(path.name + TEMP_SUFFIX)
        # Opened outside the cleanup block: nothing exists to remove if this fails.
        handle = temp_path.open("wb")
        total_size = 0
        try:
            with handle:
                for chunk in chunks:
                    if not chunk:
                        continue
                    total_size += len(chunk)
                    if max_bytes is not None and total_size > max_bytes:
                        raise SizeLimitExceeded(max_bytes)
                    handle.write(chunk)
            temp_path.replace(path)
            temp_path = None
        finally:
            if temp_path is not None:
                temp_path.unlink(missing_ok=True)
        logger.info("image_written file_name=%s size=%d", name, total_size)
        return total_size

    def save_stream(self, name: str, stream: BinaryIO, max_bytes: Optional[int] = None) -> int:
        return self.write_chunks(name, iter(lambda: stream.read(CHUNK_SIZE_BYTES), b""), max_bytes)

    def fetch_remote_image(
        self,
        url: str,
        timezone: str,
        timeout: float = 30.0,
        max_bytes: Optional[int] = None,
    ) -> str:
        """Download *url* into the store and return the generated filename.

        The response body is streamed to disk only when its content type is
        an image. Any failure raises RemoteFetchError and leaves no file.
        """

        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.hostname:
            raise RemoteFetchError(
                f"Unsupported URL: {url}. Only http and https URLs are allowed."
            )

        response = None
        try:
            response = requests.get(url, timeout=timeout, stream=True)
            response.raise_for_status()

            content_type = response.headers.get("content-type") or ""
            if not content_type.lower().startswith("image"):
                logger.warning(
                    "url_fetch_rejected url=%s content_type=%s", url, content_type or "unknown"
                )
                raise RemoteFetchError(
                    f"URL did not return an image (content-type: {content_type or 'unknown'})"
                )

            extension = extension_for_content_type(content_type)
            if extension is None:
                raise RemoteFetchError(f"Unsupported image type: {content_type}")

            file_name = remote_filename(extension, format_timestamp(timezone))
            size = self.write_chunks(
                file_name,
                response.iter_content(chunk_size=CHUNK_SIZE_BYTES),
                max_bytes=max_bytes,
            )
        except SizeLimitExceeded as error:
            logger.warning("url_fetch_too_large url=%s limit=%d", url, error.limit)
            raise RemoteFetchError(str(error)) from error
        except requests.RequestException as error:
            logger.error("url_fetch_failed url=%s error=%s", url, error)
            raise RemoteFetchError(f"Failed to fetch {url}: {error}") from error
        except OSError as error:
            logger.error("url_store_failed url=%s error=%s", url, error)
            raise RemoteFetchError(error.strerror or "Could not store file") from error
        finally:
            if response is not None:
                response.close()

        logger.info(
            "url_fetched url=%s file_name=%s size=%d content_type=%s",
            url,
            file_name,
            size,
            content_type,
        )
        return file_name
