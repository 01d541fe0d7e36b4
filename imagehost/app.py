import logging
import re
import sys
import uuid
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, List, Optional
from urllib.parse import quote

from flask import (
    Blueprint,
    Flask,
    Response,
    abort,
    current_app,
    g,
    has_request_context,
    jsonify,
    make_response,
    redirect,
    render_template,
    request,
    send_from_directory,
    url_for,
)
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.datastructures import FileStorage
from werkzeug.exceptions import HTTPException, RequestEntityTooLarge, TooManyRequests

from .auth import challenge_response, require_admin
from .config import BYTES_PER_MB, Settings
from .errors import (
    AuthError,
    ConfigError,
    ExtensionError,
    ImageHostError,
    NotFoundError,
    UnsupportedMediaType,
    UploadLibraryError,
)
from .pagination import PAGE_SIZE, build_page, parse_page_index
from .storage import (
    SUPPORTED_FORMATS_MESSAGE,
    UPLOAD_EXTENSIONS,
    UPLOAD_MIMETYPES,
    ImageStore,
    SizeLimitExceeded,
    file_extension,
    format_timestamp,
    is_image_filename,
    upload_filename,
)

APP_NAME = "imagehost"
APP_VERSION = "1.0.0"

LOG_FILE_MAX_BYTES = 5 * 1024 * 1024  # 5 MB max log file size
LOG_FILE_BACKUP_COUNT = 3
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

MAX_UPLOAD_FILES = 4
UPLOAD_FIELD = "images"
STATIC_CACHE_CONTROL = "max-age=86400, public, stale-while-revalidate"
CONTENT_DPR = "2.0"
STORE_EXTENSION_KEY = "imagehost.store"

_CONTROL_CHAR_PATTERN = re.compile(r"[\x00-\x1f\x7f-\x9f\n\r]")


def sanitize_log_value(value: Any) -> Any:
    """Remove control characters from log values to prevent log injection."""

    if isinstance(value, str):
        escaped = value.replace("\n", "\\n").replace("\r", "\\r")
        return _CONTROL_CHAR_PATTERN.sub(
            lambda match: f"\\x{ord(match.group()):02x}", escaped
        )
    return value


class RequestAwareLogger:
    """Logger wrapper that injects request IDs into log messages."""

    def __init__(self, logger: logging.Logger) -> None:
        self._logger = logger

    def _with_request(self, message: str) -> str:
        if has_request_context():
            request_id = getattr(g, "request_id", None)
            if request_id:
                return f"request_id={request_id} {message}"
        return message

    def info(self, msg: str, *args, **kwargs) -> None:
        self._logger.info(self._with_request(msg), *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs) -> None:
        self._logger.warning(self._with_request(msg), *args, **kwargs)

    def error(self, msg: str, *args, **kwargs) -> None:
        self._logger.error(self._with_request(msg), *args, **kwargs)


lifecycle_logger = RequestAwareLogger(logging.getLogger("imagehost.lifecycle"))


def configure_logging(settings: Settings) -> Optional[Path]:
    """Configure console logging and attach a rotating file handler.

    Returns the log file path, or None when file logging is disabled.
    """

    numeric_level = getattr(logging, settings.log_level, logging.INFO)
    logging.basicConfig(level=numeric_level, format=LOG_FORMAT)
    root_logger = logging.getLogger()
    logging.getLogger("imagehost").setLevel(numeric_level)

    if settings.logs_dir is None:
        return None

    settings.logs_dir.mkdir(parents=True, exist_ok=True)
    log_path = settings.logs_dir / "application.log"
    formatter = logging.Formatter(LOG_FORMAT)

    for handler in root_logger.handlers:
        if isinstance(handler, RotatingFileHandler) and getattr(handler, "baseFilename", "") == str(log_path):
            handler.setLevel(numeric_level)
            handler.setFormatter(formatter)
            return log_path

    file_handler = RotatingFileHandler(
        log_path,
        maxBytes=LOG_FILE_MAX_BYTES,
        backupCount=LOG_FILE_BACKUP_COUNT,
        encoding="utf-8",
    )
    file_handler.setLevel(numeric_level)
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)
    return log_path


limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")

images_bp = Blueprint("images", __name__)


def get_settings() -> Settings:
    return current_app.config["IMAGEHOST_SETTINGS"]


def get_store() -> ImageStore:
    return current_app.extensions[STORE_EXTENSION_KEY]


def admin_rate_limit_string() -> str:
    return get_settings().admin_rate_limit


def image_url(file_name: str) -> str:
    """Absolute public URL of a stored image."""

    return f"{get_settings().site_baseurl}/{quote(file_name)}"


def is_allowed_upload(filename: str, mimetype: Optional[str]) -> bool:
    return file_extension(filename) in UPLOAD_EXTENSIONS and (mimetype or "").lower() in UPLOAD_MIMETYPES


def _wants_html() -> bool:
    return request.method == "GET"


# --- Request lifecycle hooks ---

@images_bp.before_app_request
def add_request_id() -> None:
    """Assign a request identifier for downstream logging."""

    g.request_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)


@images_bp.after_app_request
def log_request_completion(response: Response):
    lifecycle_logger.info(
        "request_completed method=%s path=%s status=%d",
        request.method,
        sanitize_log_value(request.path),
        response.status_code,
    )
    return response


@images_bp.after_app_request
def add_response_headers(response: Response):
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    if hasattr(g, "request_id"):
        response.headers["X-Request-ID"] = g.request_id
    return response


@images_bp.app_context_processor
def inject_site_state():
    return {
        "image_url": image_url,
        "site_baseurl": get_settings().site_baseurl,
        "supported_formats": SUPPORTED_FORMATS_MESSAGE,
        "max_upload_files": MAX_UPLOAD_FILES,
    }


# --- Error handlers ---

@images_bp.app_errorhandler(AuthError)
def handle_auth_error(error: AuthError):
    return challenge_response(get_settings().auth_realm)


@images_bp.app_errorhandler(ImageHostError)
def handle_image_host_error(error: ImageHostError):
    lifecycle_logger.warning(
        "request_failed error=%s status=%d message=%s path=%s",
        type(error).__name__,
        error.status_code,
        sanitize_log_value(error.message),
        sanitize_log_value(request.path),
    )
    if _wants_html():
        return (
            render_template("error.html", status=error.status_code, message=error.message),
            error.status_code,
        )
    return jsonify(error.to_payload()), error.status_code


@images_bp.app_errorhandler(RequestEntityTooLarge)
def handle_request_too_large(error: RequestEntityTooLarge):
    lifecycle_logger.warning(
        "upload_rejected reason=request_too_large content_length=%s",
        request.content_length,
    )
    return jsonify({"error": {"message": "File too large"}}), 413


@images_bp.app_errorhandler(TooManyRequests)
def handle_rate_limit(error: TooManyRequests):
    description = getattr(error, "description", "Too many requests")
    lifecycle_logger.warning(
        "rate_limited path=%s ip=%s",
        sanitize_log_value(request.path),
        request.remote_addr or "unknown",
    )
    return jsonify({"error": {"message": f"Rate limit exceeded: {description}"}}), 429


@images_bp.app_errorhandler(404)
def handle_not_found(error: HTTPException):
    if _wants_html():
        return render_template("error.html", status=404, message="Not Found"), 404
    return jsonify({"error": {"message": "Not Found"}}), 404


# --- Listing pages ---

def _render_gallery(template: str) -> Response:
    files = get_store().list_images()
    page = build_page(files, PAGE_SIZE, parse_page_index(request.args.get("page")))
    response = make_response(render_template(template, total=len(files), page=page))
    response.headers["Content-DPR"] = CONTENT_DPR
    return response


@images_bp.route("/")
def index():
    return _render_gallery("index.html")


@images_bp.route("/delete", methods=["GET"])
def delete_page():
    return _render_gallery("delete.html")


@images_bp.route("/health")
def health_check():
    store = get_store()
    try:
        count = len(store.list_images())
    except OSError as error:
        lifecycle_logger.error("health_check_failed error=%s", error)
        return jsonify({"status": "error", "checks": {"storage": str(error)[:100]}}), 503
    return jsonify({"status": "ok", "checks": {"storage": "ok"}, "images": count})


# --- Upload ---

def _collect_uploads() -> List[FileStorage]:
    """Validate every file part before anything is written."""

    unexpected = [field for field in request.files if field != UPLOAD_FIELD]
    if unexpected:
        raise UploadLibraryError("Unexpected field")

    uploads = [
        upload
        for upload in request.files.getlist(UPLOAD_FIELD)
        if isinstance(upload, FileStorage) and upload.filename
    ]
    if not uploads:
        raise ImageHostError("No files were uploaded", status_code=400)
    if len(uploads) > MAX_UPLOAD_FILES:
        raise UploadLibraryError("Too many files")

    for upload in uploads:
        if not is_allowed_upload(upload.filename, upload.mimetype):
            lifecycle_logger.warning(
                "upload_rejected reason=extension filename=%s mimetype=%s",
                sanitize_log_value(upload.filename),
                sanitize_log_value(upload.mimetype),
            )
            raise ExtensionError(SUPPORTED_FORMATS_MESSAGE)
    return uploads


def _discard_uploads(store: ImageStore, stored: List[str]) -> None:
    """Remove the files already written for a batch that is being rejected."""

    for file_name in stored:
        store.delete(file_name)
    if stored:
        lifecycle_logger.info("upload_rolled_back count=%d", len(stored))


@images_bp.route("/upload", methods=["GET"])
def upload_page():
    return render_template("upload.html", total=len(get_store().list_images())), 201


@images_bp.route("/upload", methods=["POST"])
@limiter.limit(admin_rate_limit_string)
@require_admin
def upload_images():
    settings = get_settings()
    store = get_store()
    uploads = _collect_uploads()

    stamp = format_timestamp(settings.timezone)
    stored: List[str] = []
    for upload in uploads:
        file_name = upload_filename(upload.filename, stamp)
        try:
            size = store.save_stream(file_name, upload.stream, max_bytes=settings.upload_limit_bytes)
        except SizeLimitExceeded as error:
            lifecycle_logger.warning(
                "upload_rejected reason=too_large filename=%s limit=%d",
                sanitize_log_value(upload.filename),
                error.limit,
            )
            _discard_uploads(store, stored)
            raise UploadLibraryError("File too large") from error
        except OSError as error:
            lifecycle_logger.error(
                "upload_failed filename=%s error=%s",
                sanitize_log_value(upload.filename),
                sanitize_log_value(str(error)),
            )
            _discard_uploads(store, stored)
            raise UploadLibraryError(error.strerror or "Could not store file") from error
        finally:
            upload.close()
        stored.append(file_name)
        lifecycle_logger.info(
            "image_uploaded file_name=%s original=%s size=%d",
            sanitize_log_value(file_name),
            sanitize_log_value(upload.filename),
            size,
        )

    return redirect(settings.site_baseurl or url_for("images.index"))


# --- Delete ---

@images_bp.route("/delete", methods=["DELETE"])
@limiter.limit(admin_rate_limit_string)
@require_admin
def delete_image():
    file_name = request.args.get("fileName")
    if not get_store().delete(file_name):
        raise NotFoundError(f"File not found: {file_name or ''}")
    lifecycle_logger.info(
        "image_deleted_manual file_name=%s ip=%s",
        sanitize_log_value(file_name),
        request.remote_addr or "unknown",
    )
    return "", 204


# --- Single image view ---

@images_bp.route("/i/<file_name>")
def image_page(file_name: str):
    if not is_image_filename(file_name):
        raise UnsupportedMediaType(f"Unsupported media type: {file_name}")
    if not get_store().exists(file_name):
        raise NotFoundError(f"File not found: {file_name}")
    return render_template("image.html", file_name=file_name)


# --- Remote fetch ---

@images_bp.route("/url2image", methods=["GET"])
def url2image_page():
    return render_template("url2image.html", total=len(get_store().list_images()))


@images_bp.route("/url2image", methods=["PUT"])
@limiter.limit(admin_rate_limit_string)
@require_admin
def url2image():
    settings = get_settings()
    url = (request.args.get("url") or "").strip()
    if not url:
        raise ImageHostError("url query parameter is required", status_code=400)

    lifecycle_logger.info("downloading_from_url url=%s", sanitize_log_value(url))
    file_name = get_store().fetch_remote_image(
        url,
        settings.timezone,
        timeout=settings.fetch_timeout,
        max_bytes=settings.fetch_limit_bytes,
    )
    return jsonify({"imageUrl": image_url(file_name), "fileName": file_name})


# --- Static files ---

@images_bp.route("/<path:file_name>")
def serve_image(file_name: str):
    # Only plain names directly inside the storage directory are served.
    if not is_image_filename(file_name) or get_store().path_for(file_name) is None:
        abort(404)
    response = send_from_directory(get_store().root, file_name)
    response.headers["Cache-Control"] = STATIC_CACHE_CONTROL
    response.headers["Content-DPR"] = CONTENT_DPR
    return response


def create_app(settings: Optional[Settings] = None) -> Flask:
    """Build the Flask application around an explicit Settings instance."""

    if settings is None:
        settings = Settings.from_env()
    configure_logging(settings)

    app = Flask(__name__)
    app.config["IMAGEHOST_SETTINGS"] = settings
    # Per-file size is enforced while streaming; this bounds the whole body.
    app.config["MAX_CONTENT_LENGTH"] = settings.upload_limit_bytes * MAX_UPLOAD_FILES + BYTES_PER_MB
    app.config["RATELIMIT_ENABLED"] = settings.rate_limit_enabled

    store = ImageStore(settings.storage_dir)
    store.ensure_directory()
    app.extensions[STORE_EXTENSION_KEY] = store

    limiter.init_app(app)
    app.register_blueprint(images_bp)
    return app


def main() -> None:
    try:
        settings = Settings.from_env()
    except ConfigError as error:
        logging.getLogger("imagehost.config").critical("configuration_invalid error=%s", error)
        sys.exit(1)

    app = create_app(settings)
    lifecycle_logger.info(
        "[%s/%s] Listen on http://localhost:%d", APP_NAME, APP_VERSION, settings.port
    )
    app.run(host="0.0.0.0", port=settings.port, debug=False)


if __name__ == "__main__":
    main()
