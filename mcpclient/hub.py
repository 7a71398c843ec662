"""Client for the MCP Hub upload API."""

from __future__ import annotations

import ipaddress
import json
import os
import re
import socket
from dataclasses import dataclass
from typing import IO, Any, Callable
from urllib.parse import quote, urlsplit

import requests

__all__ = [
    "HubError",
    "InitUploadRequest",
    "InitUploadResponse",
    "FinalizeUploadResponse",
    "ProgressReader",
    "HubClient",
    "is_localhost",
    "is_private_ip",
]

DEFAULT_TIMEOUT = 300.0
REPORT_EVERY = 100 * 1024

ProgressCallback = Callable[[int, int], None]

_UPLOAD_ID = re.compile(r"[a-fA-F0-9-]{36}")
_LOCALHOST_NAMES = frozenset({"localhost", "127.0.0.1", "::1", "[::1]"})
_PRIVATE_V4 = tuple(
    ipaddress.ip_network(net)
    for net in (
        "127.0.0.0/8",
        "10.0.0.0/8",
        "172.16.0.0/12",
        "192.168.0.0/16",
        "169.254.0.0/16",
        "224.0.0.0/24",
    )
)
_PRIVATE_V6 = tuple(
    ipaddress.ip_network(net) for net in ("::1/128", "fc00::/7", "fe80::/10")
)


class HubError(Exception):
    """Raised when a hub request is invalid or the hub rejects it."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass
class InitUploadRequest:
    mcp_name: str
    mcp_version: str
    bundle_digest: str


@dataclass
class InitUploadResponse:
    upload_id: str = ""
    bundle_upload_url: str = ""
    url_expires_at: str = ""


@dataclass
class FinalizeUploadResponse:
    version_id: str = ""
    status: str = ""
    message: str = ""


def _strip_port(host: str) -> str:
    if host.startswith("["):
        end = host.find("]")
        if end != -1 and host[end + 1 : end + 2] == ":":
            return host[1:end]
        return host
    if host.count(":") == 1:
        return host.split(":", 1)[0]
    return host


def is_localhost(host: str) -> bool:
    """True for localhost, 127.0.0.1 and ::1, with or without a port."""
    return _strip_port(host).strip().lower() in _LOCALHOST_NAMES


def _is_private_address(ip: ipaddress.IPv4Address | ipaddress.IPv6Address) -> bool:
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    if isinstance(ip, ipaddress.IPv4Address):
        return any(ip in net for net in _PRIVATE_V4)
    if any(ip in net for net in _PRIVATE_V6):
        return True
    packed = ip.packed
    return packed[0] == 0xFF and packed[1] & 0x0F == 0x02


def is_private_ip(host: str) -> bool:
    """True when the host is, or resolves to, a loopback, private or link-local address.

    Hosts that cannot be resolved count as private.
    """
    name = _strip_port(host)
    if not name:
        return True
    try:
        ip = ipaddress.ip_address(name)
    except ValueError:
        try:
            infos = socket.getaddrinfo(name, None)
        except (OSError, UnicodeError):
            return True
        if not infos:
            return True
        try:
            ip = ipaddress.ip_address(str(infos[0][4][0]).split("%", 1)[0])
        except ValueError:
            return True
    return _is_private_address(ip)


class ProgressReader:
    """File-like wrapper that reports bytes read to a callback."""

    def __init__(
        self,
        reader: IO[bytes],
        total_bytes: int,
        on_progress: ProgressCallback | None,
        report_every: int = REPORT_EVERY,
    ) -> None:
        self._reader = reader
        self.total_bytes = total_bytes
        self.bytes_read = 0
        self._on_progress = on_progress
        self._last_reported = 0
        self._report_every = report_every

    def read(self, size: int = -1) -> bytes:
        data = self._reader.read(size)
        self.bytes_read += len(data)
        reads_to_end = size is None or size < 0
        at_eof = reads_to_end or (not data and size != 0)
        if self._on_progress is not None and (
            self.bytes_read - self._last_reported >= self._report_every or at_eof
        ):
            self._on_progress(self.bytes_read, self.total_bytes)
            self._last_reported = self.bytes_read
        return data


def _string_fields(payload: Any, names: tuple[str, ...]) -> dict[str, str] | None:
    """Pick string fields from a decoded JSON object; None when the shape is wrong."""
    if payload is None:
        return {name: "" for name in names}
    if not isinstance(payload, dict):
        return None
    result: dict[str, str] = {}
    for name in names:
        value = payload.get(name)
        if value is None:
            result[name] = ""
        elif isinstance(value, str):
            result[name] = value
        else:
            return None
    return result


class HubClient:
    """Talks to the hub's upload endpoints."""

    def __init__(
        self, base_url: str, token: str = "", timeout: float = DEFAULT_TIMEOUT
    ) -> None:
        if not base_url:
            raise HubError("hub base URL cannot be empty")
        try:
            parts = urlsplit(base_url)
            host = parts.hostname or ""
        except ValueError as exc:
            raise HubError(f"invalid hub URL: {exc}") from exc

        if parts.scheme != "https" and not is_localhost(host):
            raise HubError(f"hub URL must use https (got {parts.scheme})")
        if is_private_ip(host) and not is_localhost(host):
            raise HubError(f"hub URL cannot be private IP: {host}")

        self.base_url = base_url
        self.token = token
        self.timeout = timeout
        self._session = requests.Session()

    def close(self) -> None:
        self._session.close()

    def __enter__(self) -> HubClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _status_error(self, response: requests.Response) -> HubError:
        try:
            payload = json.loads(response.content)
        except ValueError:
            fields = None
        else:
            fields = _string_fields(payload, ("error", "message", "code"))
        if fields is not None:
            return HubError(
                f"hub error: {fields['message']} ({fields['code']})",
                response.status_code,
            )
        return HubError(
            f"unexpected status code: {response.status_code}, body: {response.text}",
            response.status_code,
        )

    def _post_json(
        self, endpoint: str, body: str, expected_status: int, names: tuple[str, ...]
    ) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        try:
            response = self._session.post(
                endpoint, data=body, headers=headers, timeout=self.timeout
            )
        except requests.RequestException as exc:
            raise HubError(f"failed to send request: {exc}") from exc

        if response.status_code != expected_status:
            raise self._status_error(response)

        try:
            payload = json.loads(response.content)
        except ValueError as exc:
            raise HubError(f"failed to parse response: {exc}") from exc
        fields = _string_fields(payload, names)
        if fields is None:
            raise HubError("failed to parse response: unexpected JSON shape")
        return fields

    def init_upload(self, request: InitUploadRequest | None) -> InitUploadResponse:
        """Open an upload session and return where to send the bundle."""
        if request is None:
            raise HubError("request cannot be None")
        if not (request.mcp_name and request.mcp_version and request.bundle_digest):
            raise HubError("mcp_name, mcp_version, and bundle_digest are required")

        body = json.dumps(
            {
                "mcp_name": request.mcp_name,
                "mcp_version": request.mcp_version,
                "bundle_digest": request.bundle_digest,
            }
        )
        fields = self._post_json(
            f"{self.base_url}/api/v1/uploads/init",
            body,
            201,
            ("upload_id", "bundle_upload_url", "url_expires_at"),
        )
        return InitUploadResponse(**fields)

    def finalize_upload(self, upload_id: str) -> FinalizeUploadResponse:
        """Mark an upload session as complete."""
        if not upload_id:
            raise HubError("uploadID cannot be empty")
        if not _UPLOAD_ID.fullmatch(upload_id):
            raise HubError(f"invalid upload ID format: {upload_id}")

        endpoint = f"{self.base_url}/api/v1/uploads/{quote(upload_id, safe='')}/finalize"
        fields = self._post_json(
            endpoint, "{}", 200, ("version_id", "status", "message")
        )
        return FinalizeUploadResponse(**fields)

    def upload_file(
        self,
        presigned_url: str,
        file_path: str,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        """PUT a file to a presigned URL, reporting progress if asked."""
        if not presigned_url:
            raise HubError("presignedURL cannot be empty")
        if not file_path:
            raise HubError("filePath cannot be empty")

        try:
            total_bytes = os.stat(file_path).st_size
        except OSError as exc:
            raise HubError(f"failed to stat file: {exc}") from exc

        try:
            handle = open(file_path, "rb")
        except OSError as exc:
            raise HubError(f"failed to open file: {exc}") from exc

        with handle:
            body: IO[bytes] | ProgressReader = handle
            if on_progress is not None:
                body = ProgressReader(handle, total_bytes, on_progress)
            headers = {
                "Content-Type": "application/gzip",
                "Content-Length": str(total_bytes),
            }
            try:
                response = self._session.put(
                    presigned_url, data=body, headers=headers, timeout=self.timeout
                )
            except requests.RequestException as exc:
                raise HubError(f"failed to upload file: {exc}") from exc

        if response.status_code not in (200, 204):
            raise HubError(
                f"upload failed with status {response.status_code}: {response.text}",
                response.status_code,
            )