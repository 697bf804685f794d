"""Client side of the remote ingestion service.

The engine only depends on the :class:`IngestionTransport` protocol.
:class:`HttpIngestionTransport` is the production implementation. Every
request is bounded by ``timeout_seconds``; the engine does not impose a
timeout of its own.
"""

from __future__ import annotations

import logging
import mimetypes
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Protocol, Tuple, runtime_checkable

import httpx

from .exceptions import (
    PermanentTransportError,
    TransientTransportError,
    TransportError,
    ValidationTransportError,
)

logger = logging.getLogger(__name__)

IDEMPOTENCY_HEADER = "Idempotency-Key"


@dataclass
class SubmissionReceipt:
    """Acknowledgement returned by the ingestion service."""

    remote_id: Optional[str] = None
    status_code: Optional[int] = None
    duplicate: bool = False
    body: Dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class IngestionTransport(Protocol):
    """Remote ingestion service as seen by the sync engine.

    Implementations must be safe to call repeatedly with the same
    ``idempotency_key``: a report may be delivered more than once and the
    service deduplicates on that key.
    """

    async def submit(
        self, payload: Dict[str, Any], *, idempotency_key: str
    ) -> SubmissionReceipt:
        ...

    async def upload_attachment(self, attachment: Any, *, idempotency_key: str) -> str:
        ...


def error_for_status(status_code: int, message: str) -> TransportError:
    """Translate an HTTP error status into a typed transport error."""
    if status_code >= 500 or status_code in (408, 425, 429):
        return TransientTransportError(message, status_code=status_code)
    if status_code in (400, 422):
        return ValidationTransportError(message, status_code=status_code)
    return PermanentTransportError(message, status_code=status_code)


class HttpIngestionTransport:
    """Submits reports and attachments over HTTP with httpx.

    A 409 Conflict on submission means the service already holds a report
    with this idempotency key, which counts as a successful delivery.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout_seconds: float = 30.0,
        headers: Optional[Dict[str, str]] = None,
        reports_path: str = "/reports",
        attachments_path: str = "/reports/attachments",
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout_seconds
        self.headers = dict(headers or {})
        self._reports_url = f"{self.base_url}{reports_path}"
        self._attachments_url = f"{self.base_url}{attachments_path}"
        self._client = client

    async def submit(
        self, payload: Dict[str, Any], *, idempotency_key: str
    ) -> SubmissionReceipt:
        headers = {**self.headers, IDEMPOTENCY_HEADER: idempotency_key}
        response = await self._request(
            "POST", self._reports_url, json=payload, headers=headers, allow_conflict=True
        )
        body = _json_body(response)
        if response.status_code == 409:
            logger.info(
                "Report already ingested",
                extra={"item_id": idempotency_key},
            )
            return SubmissionReceipt(
                remote_id=body.get("id"), status_code=409, duplicate=True, body=body
            )
        return SubmissionReceipt(
            remote_id=body.get("id"), status_code=response.status_code, body=body
        )

    async def upload_attachment(self, attachment: Any, *, idempotency_key: str) -> str:
        if isinstance(attachment, dict) and attachment.get("url"):
            # Uploaded before the report was queued
            return str(attachment["url"])

        name, content, content_type = _read_attachment(attachment)
        headers = {**self.headers, IDEMPOTENCY_HEADER: f"{idempotency_key}:{name}"}
        response = await self._request(
            "POST",
            self._attachments_url,
            files={"file": (name, content, content_type)},
            data={"report_id": idempotency_key},
            headers=headers,
        )
        body = _json_body(response)
        url = body.get("url")
        if not url:
            raise PermanentTransportError(
                f"Attachment upload for {name} returned no URL",
                status_code=response.status_code,
            )
        return str(url)

    async def _request(
        self, method: str, url: str, *, allow_conflict: bool = False, **kwargs: Any
    ) -> httpx.Response:
        try:
            if self._client is not None:
                response = await self._client.request(method, url, timeout=self.timeout, **kwargs)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise TransientTransportError(f"Request to {url} timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise TransientTransportError(f"Request to {url} failed: {exc}") from exc

        if response.status_code == 409 and allow_conflict:
            return response
        if response.status_code >= 400:
            raise error_for_status(
                response.status_code,
                f"{method} {url} returned {response.status_code}: {response.text[:200]}",
            )
        return response

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()


def _json_body(response: httpx.Response) -> Dict[str, Any]:
    if not response.content:
        return {}
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {"data": data}


def _read_attachment(attachment: Any) -> Tuple[str, bytes, str]:
    """Resolve an attachment reference to (name, content, content type).

    Accepts a filesystem path or a dict with ``path`` and optional
    ``name`` / ``content_type`` keys.
    """
    if isinstance(attachment, dict):
        path_value = attachment.get("path")
        name = attachment.get("name")
        content_type = attachment.get("content_type")
    else:
        path_value, name, content_type = attachment, None, None

    if not path_value:
        raise PermanentTransportError(f"Unsupported attachment reference: {attachment!r}")

    path = Path(str(path_value)).expanduser()
    try:
        content = path.read_bytes()
    except OSError as exc:
        raise PermanentTransportError(f"Attachment {path} unreadable: {exc}") from exc

    name = name or path.name
    content_type = (
        content_type or mimetypes.guess_type(name)[0] or "application/octet-stream"
    )
    return name, content, content_type


__all__ = [
    "HttpIngestionTransport",
    "IDEMPOTENCY_HEADER",
    "IngestionTransport",
    "SubmissionReceipt",
    "error_for_status",
]
