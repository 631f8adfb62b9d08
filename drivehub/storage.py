import logging
import os
import re
import time
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Iterable, Iterator, List, Optional

import requests
from google.auth.transport.requests import AuthorizedSession

logger = logging.getLogger("drivehub.storage")

DRIVE_API_URL = "https://www.googleapis.com/drive/v3"
DRIVE_UPLOAD_URL = "https://www.googleapis.com/upload/drive/v3"
DRIVE_SCOPES = ["https://www.googleapis.com/auth/drive"]

# Constants for file operations
BYTES_PER_MB = 1024 * 1024
BYTES_PER_GB = 1024 * 1024 * 1024
CHUNK_SIZE_BYTES = 1024 * 1024  # 1 MB chunks when reading remote URLs
# Resumable upload pieces must be multiples of 256 KiB.
UPLOAD_PIECE_BYTES = 8 * BYTES_PER_MB
DEFAULT_CONTENT_TYPE = "application/octet-stream"
MAX_URL_FILENAME_LENGTH = 100

LIST_FIELDS = "files(id, name, mimeType, thumbnailLink, webViewLink, webContentLink)"
COUNT_FIELDS = "files(id)"
ADMIN_LIST_FIELDS = "files(id, name, size, md5Checksum, createdTime, webViewLink, mimeType)"
UPLOAD_FIELDS = "id, name, webViewLink, thumbnailLink, mimeType"
NEWEST_FIRST = "createdTime desc"

_LEADING_INT_PATTERN = re.compile(r"^\s*([+-]?[0-9]+)")


def _safe_int_env(key: str, default: int, min_value: int = 1) -> int:
    """Safely parse integer environment variable with error handling."""
    try:
        return max(min_value, int(os.environ.get(key, str(default))))
    except (TypeError, ValueError):
        logging.getLogger("drivehub.config").warning(
            "Invalid value for %s: %s. Using default: %d",
            key, os.environ.get(key), default
        )
        return default


def parse_leading_int(value: Any) -> Optional[int]:
    """Parse the integer prefix of *value* (``"12abc"`` -> 12).

    Returns ``None`` when no integer prefix exists.
    """

    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value == value and abs(value) != float("inf") else None
    if not isinstance(value, str):
        return None
    match = _LEADING_INT_PATTERN.match(value)
    if not match:
        return None
    return int(match.group(1))


class RemoteApiError(RuntimeError):
    """Raised when the Drive API answers with a non-success status."""

    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message


def _error_from_response(response: requests.Response) -> RemoteApiError:
    detail = None
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict):
            detail = error.get("message")
        elif isinstance(error, str):
            detail = payload.get("error_description") or error
    if not detail:
        detail = response.reason or f"HTTP {response.status_code}"
    return RemoteApiError(response.status_code, str(detail))


def _escape_query_value(value: str) -> str:
    return value.replace("\\", "\\\\").replace("'", "\\'")


class DriveClient:
    """Authenticated client for the Google Drive v3 REST API."""

    def __init__(self, credentials: Any = None, session: Optional[requests.Session] = None) -> None:
        if session is None:
            if credentials is None:
                raise ValueError("DriveClient needs credentials or a session")
            session = AuthorizedSession(credentials)
        self._session = session

    def close(self) -> None:
        self._session.close()

    def __enter__(self) -> "DriveClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _request(self, method: str, url: str, expected: Iterable[int] = (200,), **kwargs) -> requests.Response:
        response = self._session.request(method, url, **kwargs)
        if response.status_code not in expected:
            error = _error_from_response(response)
            logger.warning(
                "drive_request_failed method=%s url=%s status=%d error=%s",
                method,
                url,
                response.status_code,
                error.message,
            )
            raise error
        return response

    def list_folder(
        self,
        folder_id: str,
        fields: str = LIST_FIELDS,
        page_size: int = 100,
        order_by: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Return the non-trashed immediate children of *folder_id*."""

        params: Dict[str, Any] = {
            "q": f"'{_escape_query_value(folder_id)}' in parents and trashed = false",
            "fields": fields,
            "pageSize": page_size,
        }
        if order_by:
            params["orderBy"] = order_by
        response = self._request("GET", f"{DRIVE_API_URL}/files", params=params)
        return response.json().get("files") or []

    def get_storage_quota(self) -> Dict[str, Any]:
        response = self._request(
            "GET", f"{DRIVE_API_URL}/about", params={"fields": "storageQuota"}
        )
        return response.json().get("storageQuota") or {}

    def upload_file(
        self,
        name: str,
        folder_id: str,
        mime_type: str,
        chunks: Iterable[bytes],
        fields: str = UPLOAD_FIELDS,
    ) -> Dict[str, Any]:
        """Create a file inside *folder_id* from an iterable of byte chunks.

        Uses the resumable upload protocol with an unknown total size so the
        source is consumed incrementally. At most one upload piece plus one
        source chunk is held in memory.
        """

        mime_type = mime_type or DEFAULT_CONTENT_TYPE
        init = self._request(
            "POST",
            f"{DRIVE_UPLOAD_URL}/files",
            params={"uploadType": "resumable", "fields": fields},
            json={"name": name, "parents": [folder_id]},
            headers={"X-Upload-Content-Type": mime_type},
        )
        session_url = init.headers.get("Location")
        if not session_url:
            raise RemoteApiError(init.status_code, "Upload session URL missing from response")

        source: Iterator[bytes] = iter(chunks)
        buffer = bytearray()
        offset = 0
        exhausted = False
        while True:
            while not exhausted and len(buffer) <= UPLOAD_PIECE_BYTES:
                try:
                    chunk = next(source)
                except StopIteration:
                    exhausted = True
                    break
                if chunk:
                    buffer.extend(chunk)

            if exhausted and len(buffer) <= UPLOAD_PIECE_BYTES:
                total = offset + len(buffer)
                if buffer:
                    content_range = f"bytes {offset}-{total - 1}/{total}"
                else:
                    content_range = f"bytes */{total}"
                response = self._request(
                    "PUT",
                    session_url,
                    expected=(200, 201, 308),
                    data=bytes(buffer),
                    headers={"Content-Range": content_range},
                )
                if response.status_code != 308:
                    return response.json()
                committed = _committed_bytes(response)
            else:
                piece = bytes(buffer[:UPLOAD_PIECE_BYTES])
                response = self._request(
                    "PUT",
                    session_url,
                    expected=(308,),
                    data=piece,
                    headers={"Content-Range": f"bytes {offset}-{offset + len(piece) - 1}/*"},
                )
                committed = _committed_bytes(response)

            if committed <= offset:
                raise RemoteApiError(response.status_code, "Upload made no progress")
            # Resend whatever the server did not persist.
            del buffer[: committed - offset]
            offset = committed

    def share_publicly(self, file_id: str) -> Dict[str, Any]:
        response = self._request(
            "POST",
            f"{DRIVE_API_URL}/files/{file_id}/permissions",
            json={"role": "reader", "type": "anyone"},
        )
        return response.json()

    def delete_file(self, file_id: str) -> None:
        self._request("DELETE", f"{DRIVE_API_URL}/files/{file_id}", expected=(200, 204))

    def empty_trash(self) -> None:
        self._request("DELETE", f"{DRIVE_API_URL}/files/trash", expected=(200, 204))

    def rename_file(self, file_id: str, new_name: str) -> Dict[str, Any]:
        response = self._request(
            "PATCH", f"{DRIVE_API_URL}/files/{file_id}", json={"name": new_name}
        )
        return response.json()


def _committed_bytes(response: requests.Response) -> int:
    """Number of bytes the server has persisted, from a 308 ``Range`` header."""

    range_header = response.headers.get("Range")
    if not range_header:
        return 0
    _, _, span = range_header.partition("=")
    _, _, end = span.partition("-")
    return int(end) + 1


def _to_fixed(value: float, places: str) -> str:
    # Half-up on the exact binary value of the float.
    return str(Decimal(value).quantize(Decimal(places), rounding=ROUND_HALF_UP))


def _format_gb(num_bytes: int) -> str:
    return _to_fixed(num_bytes / BYTES_PER_GB, "0.01")


def summarize_quota(quota: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Reshape a Drive ``storageQuota`` into used/total GiB and percent used."""

    quota = quota or {}
    limit = parse_leading_int(quota.get("limit")) or 0
    usage = parse_leading_int(quota.get("usage")) or 0
    percent: Any = _to_fixed(usage / limit * 100, "0.1") if limit > 0 else 0
    return {"used": _format_gb(usage), "total": _format_gb(limit), "percent": percent}


def open_url_stream(url: str, timeout: Optional[float] = None) -> requests.Response:
    """Start a streamed GET for *url*.

    Raises:
        requests.RequestException: If the request fails or returns an error status.
    """

    response = requests.get(url, timeout=timeout, stream=True)
    try:
        response.raise_for_status()
    except requests.RequestException:
        response.close()
        raise
    return response


def filename_from_url(url: str, now: Optional[float] = None) -> str:
    filename = url.split("/")[-1].split("?")[0]
    if not filename or len(filename) > MAX_URL_FILENAME_LENGTH:
        timestamp = time.time() if now is None else now
        filename = f"url_upload_{int(timestamp * 1000)}"
    return filename


def content_type_of(response: requests.Response) -> str:
    return response.headers.get("content-type") or DEFAULT_CONTENT_TYPE
