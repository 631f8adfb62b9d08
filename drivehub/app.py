import io
import logging
import os
import re
import time
import uuid
from contextlib import contextmanager
from functools import wraps
from logging.handlers import RotatingFileHandler
from pathlib import Path
from secrets import compare_digest
from typing import Any, Callable, Dict, Iterator, Optional, Tuple

from dotenv import load_dotenv
from flask import Flask, Request, Response, current_app, g, has_request_context, jsonify, request
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.datastructures import FileStorage

from . import __version__
from .accounts import AccountDescriptor, load_accounts, resolve_client
from .storage import (
    ADMIN_LIST_FIELDS,
    BYTES_PER_MB,
    CHUNK_SIZE_BYTES,
    COUNT_FIELDS,
    DEFAULT_CONTENT_TYPE,
    LIST_FIELDS,
    NEWEST_FIRST,
    _safe_int_env,
    content_type_of,
    filename_from_url,
    open_url_stream,
    summarize_quota,
)

load_dotenv()

# Constants for limits and logging
DEFAULT_MAX_UPLOAD_SIZE_MB = 50
MULTIPART_OVERHEAD_BYTES = 1024 * 1024
LOG_FILE_MAX_BYTES = 5 * 1024 * 1024  # 5 MB max log file size
LOG_FILE_BACKUP_COUNT = 3  # Number of log file backups to keep
DEFAULT_ADMIN_PASSWORD = "admin123"
DEFAULT_PORT = 3000
DEFAULT_URL_FETCH_TIMEOUT_SECONDS = 30
FILES_PAGE_SIZE = 100
COUNT_PAGE_SIZE = 1000
ADMIN_PAGE_SIZE = 1000

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
numeric_level = getattr(logging, LOG_LEVEL, logging.INFO)
logging.basicConfig(
    level=numeric_level,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)

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

    def debug(self, msg: str, *args, **kwargs) -> None:
        self._logger.debug(self._with_request(msg), *args, **kwargs)

    def info(self, msg: str, *args, **kwargs) -> None:
        self._logger.info(self._with_request(msg), *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs) -> None:
        self._logger.warning(self._with_request(msg), *args, **kwargs)

    def error(self, msg: str, *args, **kwargs) -> None:
        self._logger.error(self._with_request(msg), *args, **kwargs)

    def exception(self, msg: str, *args, **kwargs) -> None:
        self._logger.exception(self._with_request(msg), *args, **kwargs)


def _configure_file_logging() -> Optional[Path]:
    """Attach a rotating file handler when DRIVEHUB_LOGS_DIR is set."""

    logs_dir = os.environ.get("DRIVEHUB_LOGS_DIR")
    if not logs_dir:
        return None
    log_dir = Path(logs_dir).expanduser().resolve()
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / "application.log"
    root_logger = logging.getLogger()
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")

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


APP_LOG_PATH = _configure_file_logging()


class InMemoryUploadRequest(Request):
    """Request that keeps multipart file parts in memory instead of temp files."""

    def _get_file_stream(self, total_content_length, content_type, filename=None, content_length=None):
        return io.BytesIO()


def _load_admin_password() -> str:
    configured = os.environ.get("ADMIN_PASSWORD")
    if configured:
        return configured
    logging.getLogger("drivehub.security").warning(
        "SECURITY WARNING: ADMIN_PASSWORD is not set; the built-in default admin password is active."
    )
    return DEFAULT_ADMIN_PASSWORD


def login_rate_limit_string() -> str:
    return os.environ.get("ADMIN_LOGIN_RATE_LIMIT") or "10 per minute"


app = Flask(__name__)
app.request_class = InMemoryUploadRequest

max_upload_bytes = _safe_int_env("MAX_UPLOAD_SIZE_MB", DEFAULT_MAX_UPLOAD_SIZE_MB) * BYTES_PER_MB
app.config["MAX_UPLOAD_BYTES"] = max_upload_bytes
app.config["MAX_CONTENT_LENGTH"] = max_upload_bytes + MULTIPART_OVERHEAD_BYTES
app.config["ADMIN_PASSWORD"] = _load_admin_password()
app.config["URL_FETCH_TIMEOUT"] = _safe_int_env("URL_FETCH_TIMEOUT", DEFAULT_URL_FETCH_TIMEOUT_SECONDS)
app.config["DRIVE_ACCOUNTS"] = load_accounts()
app.logger.setLevel(numeric_level)

limiter = Limiter(
    key_func=get_remote_address,
    app=app,
    storage_uri=os.environ.get("DRIVEHUB_RATE_LIMIT_STORAGE", "memory://"),
)

_base_lifecycle_logger = logging.getLogger("drivehub.lifecycle")
_base_lifecycle_logger.setLevel(numeric_level)
lifecycle_logger = RequestAwareLogger(_base_lifecycle_logger)


def _accounts() -> Tuple[AccountDescriptor, ...]:
    return current_app.config["DRIVE_ACCOUNTS"]


def _close_stream_safely(stream: Any, context: str) -> None:
    """Close an upload/input stream while logging failures."""

    if stream is None or not hasattr(stream, "close"):
        return

    try:
        stream.close()
    except OSError as error:
        lifecycle_logger.warning(
            "stream_close_failed context=%s error=%s",
            context,
            sanitize_log_value(str(error)),
        )


@contextmanager
def upload_stream_handler(file_storage: FileStorage) -> Iterator[FileStorage]:
    """Ensure uploaded file streams are always closed."""

    try:
        yield file_storage
    finally:
        _close_stream_safely(
            getattr(file_storage, "stream", None),
            f"upload_stream_handler filename={getattr(file_storage, 'filename', 'unknown')}",
        )


def check_admin_secret(supplied: Any) -> bool:
    if not isinstance(supplied, str):
        return False
    expected = current_app.config["ADMIN_PASSWORD"]
    return compare_digest(supplied.encode("utf-8"), expected.encode("utf-8"))


def require_admin_pass(view: Callable):
    @wraps(view)
    def wrapped(*args, **kwargs):
        if check_admin_secret(request.headers.get("x-admin-pass")):
            return view(*args, **kwargs)

        lifecycle_logger.warning(
            "admin_auth_failed endpoint=%s method=%s", request.endpoint, request.method
        )
        return jsonify({"success": False, "message": "Unauthorized"}), 403

    return wrapped


@app.before_request
def add_request_id() -> None:
    """Assign a request identifier for downstream logging."""

    g.request_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)


@app.after_request
def log_request_completion(response: Response):
    """Emit lifecycle logs for every completed request."""

    lifecycle_logger.info(
        "request_completed method=%s path=%s status=%d",
        request.method,
        sanitize_log_value(request.path),
        response.status_code,
    )
    return response


@app.after_request
def add_cors_headers(response: Response):
    """Allow browser clients from any origin."""

    response.headers["Access-Control-Allow-Origin"] = "*"
    response.headers["Access-Control-Allow-Methods"] = "GET, POST, DELETE, OPTIONS"
    response.headers["Access-Control-Allow-Headers"] = "Content-Type, x-admin-pass, X-Request-ID"
    response.headers["X-Content-Type-Options"] = "nosniff"
    return response


@app.after_request
def add_request_id_header(response: Response):
    """Expose the current request identifier to clients."""

    if hasattr(g, "request_id"):
        response.headers["X-Request-ID"] = g.request_id
    return response


@app.errorhandler(413)
def handle_file_too_large(error):
    lifecycle_logger.warning("upload_failed reason=too_large path=%s", sanitize_log_value(request.path))
    return jsonify({"success": False, "error": "File too large"}), 413


@app.errorhandler(429)
def handle_rate_limit(error):
    description = getattr(error, "description", "Too many requests")
    return jsonify({"success": False, "message": f"Rate limit exceeded: {description}"}), 429


def _upload_payload(created: Dict[str, Any], account_name: str) -> Dict[str, Any]:
    return {
        "fileId": created.get("id"),
        "name": created.get("name"),
        "driveLink": created.get("webViewLink"),
        "thumbnailLink": created.get("thumbnailLink"),
        "server": account_name,
        "mimeType": created.get("mimeType"),
    }


def _json_body() -> Dict[str, Any]:
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, dict) else {}


@app.route("/")
def index():
    return app.send_static_file("index.html")


@app.route("/health")
def health_check():
    accounts = _accounts()
    configured = [
        account.name
        for account in accounts
        if os.environ.get(account.credentials_env) and os.environ.get(account.folder_id_env)
    ]
    return jsonify(
        {
            "status": "healthy" if configured else "unconfigured",
            "timestamp": time.time(),
            "checks": {
                "accounts": len(accounts),
                "configured_accounts": configured,
            },
            "version": __version__,
        }
    )


@app.route("/accounts")
def list_accounts():
    accounts = [
        {"index": position, "name": account.name}
        for position, account in enumerate(_accounts())
    ]
    return jsonify({"success": True, "accounts": accounts})


@app.route("/files")
def list_files():
    try:
        resolved = resolve_client(_accounts(), request.args.get("index"))
        with resolved.client:
            files = resolved.client.list_folder(
                resolved.folder_id,
                fields=LIST_FIELDS,
                page_size=FILES_PAGE_SIZE,
                order_by=NEWEST_FIRST,
            )
    except Exception as error:
        lifecycle_logger.exception("list_files_failed index=%s", sanitize_log_value(request.args.get("index")))
        return jsonify({"success": False, "error": str(error)}), 500
    return jsonify({"success": True, "server": resolved.account_name, "files": files})


@app.route("/stats")
def storage_stats():
    try:
        resolved = resolve_client(_accounts(), request.args.get("index"))
        with resolved.client:
            children = resolved.client.list_folder(
                resolved.folder_id, fields=COUNT_FIELDS, page_size=COUNT_PAGE_SIZE
            )
            storage = summarize_quota(resolved.client.get_storage_quota())
    except Exception as error:
        lifecycle_logger.exception("storage_stats_failed index=%s", sanitize_log_value(request.args.get("index")))
        return jsonify({"success": False, "error": str(error)}), 500
    return jsonify({"success": True, "totalFiles": len(children), "storage": storage})


@app.route("/upload", methods=["POST"])
def upload():
    upload_storage = request.files.get("myFile")
    if not isinstance(upload_storage, FileStorage) or not upload_storage.filename:
        lifecycle_logger.warning("upload_failed reason=no_file")
        return jsonify({"success": False, "error": "No file"}), 400

    limit = current_app.config["MAX_UPLOAD_BYTES"]
    with upload_stream_handler(upload_storage) as upload_file:
        content = upload_file.stream.read(limit + 1)
    if len(content) > limit:
        lifecycle_logger.warning(
            "upload_failed reason=too_large filename=%s limit=%d",
            sanitize_log_value(upload_storage.filename),
            limit,
        )
        return jsonify({"success": False, "error": "File too large"}), 413

    filename = upload_storage.filename
    try:
        resolved = resolve_client(_accounts(), request.form.get("accountIndex"))
        with resolved.client:
            created = resolved.client.upload_file(
                filename,
                resolved.folder_id,
                upload_storage.content_type or DEFAULT_CONTENT_TYPE,
                [content],
            )
            resolved.client.share_publicly(created["id"])
    except Exception as error:
        lifecycle_logger.exception("upload_failed filename=%s", sanitize_log_value(filename))
        return jsonify({"success": False, "error": str(error)}), 500

    lifecycle_logger.info(
        "file_uploaded file_id=%s account=%s size=%d",
        created.get("id"),
        resolved.account_name,
        len(content),
    )
    return jsonify({"success": True, "data": _upload_payload(created, resolved.account_name)})


@app.route("/upload-url", methods=["POST"])
def upload_from_url():
    payload = _json_body()
    url = payload.get("url")
    if not isinstance(url, str) or not url:
        return jsonify({"success": False, "message": "Thiếu URL"}), 400

    try:
        resolved = resolve_client(_accounts(), payload.get("accountIndex"))
        with resolved.client:
            lifecycle_logger.info("downloading_from_url url=%s", sanitize_log_value(url))
            source = open_url_stream(url, timeout=current_app.config["URL_FETCH_TIMEOUT"])
            try:
                created = resolved.client.upload_file(
                    filename_from_url(url),
                    resolved.folder_id,
                    content_type_of(source),
                    source.iter_content(chunk_size=CHUNK_SIZE_BYTES),
                )
            finally:
                source.close()
            resolved.client.share_publicly(created["id"])
    except Exception as error:
        lifecycle_logger.exception("url_upload_failed url=%s", sanitize_log_value(url))
        return jsonify({"success": False, "message": f"Lỗi tải từ URL: {error}"}), 500

    lifecycle_logger.info(
        "file_uploaded file_id=%s account=%s source=url", created.get("id"), resolved.account_name
    )
    return jsonify({"success": True, "data": _upload_payload(created, resolved.account_name)})


@app.route("/admin/login", methods=["POST"])
@limiter.limit(lambda: login_rate_limit_string())
def admin_login():
    password = _json_body().get("password")
    if password is None:
        return jsonify({"success": False, "message": "Thiếu mật khẩu"}), 400
    if check_admin_secret(password):
        return jsonify({"success": True})
    lifecycle_logger.warning("admin_login_failed remote=%s", request.remote_addr)
    return jsonify({"success": False, "message": "Mật khẩu không đúng!"}), 401


@app.route("/admin/stats-all")
@require_admin_pass
def admin_stats_all():
    accounts = _accounts()
    servers = []
    for position, account in enumerate(accounts):
        try:
            resolved = resolve_client(accounts, position)
            with resolved.client:
                storage = summarize_quota(resolved.client.get_storage_quota())
        except Exception as error:
            lifecycle_logger.warning(
                "account_stats_failed account=%s error=%s",
                account.name,
                sanitize_log_value(str(error)),
            )
            servers.append({"name": account.name, "error": True})
            continue
        servers.append(
            {
                "name": resolved.account_name,
                "totalGB": storage["total"],
                "usedGB": storage["used"],
                "percent": storage["percent"],
            }
        )
    return jsonify({"success": True, "servers": servers})


@app.route("/admin/files/<server_index>")
@require_admin_pass
def admin_list_files(server_index: str):
    try:
        resolved = resolve_client(_accounts(), server_index)
        with resolved.client:
            files = resolved.client.list_folder(
                resolved.folder_id,
                fields=ADMIN_LIST_FIELDS,
                page_size=ADMIN_PAGE_SIZE,
                order_by=NEWEST_FIRST,
            )
    except Exception as error:
        lifecycle_logger.exception("admin_list_failed index=%s", sanitize_log_value(server_index))
        return jsonify({"success": False, "error": str(error)}), 500
    return jsonify({"success": True, "files": files})


@app.route("/admin/files/<server_index>/<file_id>", methods=["DELETE"])
@require_admin_pass
def admin_delete_file(server_index: str, file_id: str):
    try:
        resolved = resolve_client(_accounts(), server_index)
        with resolved.client:
            resolved.client.delete_file(file_id)
    except Exception as error:
        lifecycle_logger.exception("admin_delete_failed file_id=%s", sanitize_log_value(file_id))
        return jsonify({"success": False, "error": str(error)}), 500
    lifecycle_logger.info("file_deleted file_id=%s account=%s", sanitize_log_value(file_id), resolved.account_name)
    return jsonify({"success": True, "message": "Deleted"})


@app.route("/admin/empty-trash/<server_index>", methods=["POST"])
@require_admin_pass
def admin_empty_trash(server_index: str):
    try:
        resolved = resolve_client(_accounts(), server_index)
        with resolved.client:
            resolved.client.empty_trash()
    except Exception as error:
        lifecycle_logger.exception("admin_empty_trash_failed index=%s", sanitize_log_value(server_index))
        return jsonify({"success": False, "error": str(error)}), 500
    lifecycle_logger.info("trash_emptied account=%s", resolved.account_name)
    return jsonify({"success": True})


@app.route("/admin/rename", methods=["POST"])
@require_admin_pass
def admin_rename():
    payload = _json_body()
    file_id = payload.get("fileId")
    new_name = payload.get("newName")
    if not isinstance(file_id, str) or not file_id or not isinstance(new_name, str) or not new_name:
        return jsonify({"success": False, "error": "fileId and newName are required"}), 400

    try:
        resolved = resolve_client(_accounts(), payload.get("accountIndex"))
        with resolved.client:
            resolved.client.rename_file(file_id, new_name)
    except Exception as error:
        lifecycle_logger.exception("admin_rename_failed file_id=%s", sanitize_log_value(file_id))
        return jsonify({"success": False, "error": str(error)}), 500
    lifecycle_logger.info(
        "file_renamed file_id=%s new_name=%s", sanitize_log_value(file_id), sanitize_log_value(new_name)
    )
    return jsonify({"success": True})


if __name__ == "__main__":
    port = _safe_int_env("PORT", DEFAULT_PORT)
    lifecycle_logger.info("server_starting port=%d accounts=%d", port, len(app.config["DRIVE_ACCOUNTS"]))
    app.run(host="0.0.0.0", port=port, debug=False)
