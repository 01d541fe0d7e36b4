from typing import Optional


class ConfigError(ValueError):
    """Raised when the environment does not describe a usable configuration."""


class ImageHostError(Exception):
    """Base class for errors surfaced directly to the HTTP caller."""

    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_payload(self) -> dict:
        return {"error": {"message": self.message}}


class AuthError(ImageHostError):
    status_code = 401


class ExtensionError(ImageHostError):
    """Raised when an upload carries a MIME type or extension outside the allow-list."""

    status_code = 413


class UploadLibraryError(ImageHostError):
    """Generic multipart upload failure (too many files, unexpected field, size cap)."""

    def to_payload(self) -> dict:
        return {"error": {"message": f"Upload error: {self.message}"}}


class NotFoundError(ImageHostError):
    status_code = 404


class RemoteFetchError(ImageHostError):
    """Raised when a remote URL cannot be stored as an image."""


class UnsupportedMediaType(ImageHostError):
    status_code = 415
