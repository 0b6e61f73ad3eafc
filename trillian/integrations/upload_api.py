"""Async client for the remote processing API (multipart upload, Basic Auth)."""

import asyncio
import logging
from pathlib import Path

import httpx

from trillian.schemas.agent import UploadConfig, UploadOutcome

logger = logging.getLogger(__name__)

# Status codes that prove the endpoint is reachable when probed with GET
REACHABLE_STATUS_CODES = frozenset({200, 404, 405})
MAX_ERROR_CHARS = 500


class UploadError(Exception):
    """An upload was rejected or never reached the server.

    ``status_code`` is None for transport-level failures (connection refused,
    timeout, DNS).
    """

    def __init__(self, status_code: int | None, message: str) -> None:
        self.status_code = status_code
        self.message = message
        label = f"HTTP {status_code}" if status_code is not None else "transport error"
        super().__init__(f"{label}: {message}")


def _json_or_none(response: httpx.Response) -> dict | None:
    try:
        data = response.json()
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


def _error_message(response: httpx.Response) -> str:
    """Best-effort error text from a failed response body."""
    data = _json_or_none(response)
    if data:
        for key in ("error", "message", "detail"):
            if data.get(key):
                return str(data[key])
    text = response.text.strip()
    return text[:MAX_ERROR_CHARS] if text else "Unknown error"


class UploadClient:
    """Async HTTP client for the upload endpoint.

    Usage::

        async with UploadClient(endpoint, username, password, timeout_seconds=30) as client:
            outcome = await client.upload(Path("/in/memo.m4a"), tag="voice")

    The connect timeout is ``timeout_seconds``; the whole request, body
    included, is cut off after twice that.
    """

    def __init__(
        self,
        endpoint: str,
        username: str,
        password: str,
        *,
        timeout_seconds: float = 30,
        extra_fields: dict[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._endpoint = endpoint
        self._extra_fields = dict(extra_fields or {})
        self._total_timeout = timeout_seconds * 2
        self._client = httpx.AsyncClient(
            auth=httpx.BasicAuth(username, password),
            timeout=httpx.Timeout(timeout_seconds * 2, connect=timeout_seconds),
            transport=transport,
        )

    @classmethod
    def from_config(
        cls, config: UploadConfig, *, transport: httpx.AsyncBaseTransport | None = None
    ) -> "UploadClient":
        return cls(
            config.endpoint,
            config.username,
            config.password,
            timeout_seconds=config.timeout_seconds,
            extra_fields=config.extra_fields,
            transport=transport,
        )

    @property
    def endpoint(self) -> str:
        return self._endpoint

    async def __aenter__(self) -> "UploadClient":
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    async def upload(self, file_path: str | Path, *, tag: str) -> UploadOutcome:
        """POST a file as multipart form data with its ``tag``.

        Returns:
            The HTTP status and, when the body is JSON, the ``task_id``/``id``
            and ``status`` fields.

        Raises:
            UploadError: On a non-2xx status or a transport failure.
        """
        path = Path(file_path)
        data = {**self._extra_fields, "tag": tag}
        logger.info("Uploading %s to %s", path.name, self._endpoint)
        logger.debug("Upload tag=%s fields=%s", tag, sorted(data))

        try:
            async with asyncio.timeout(self._total_timeout):
                with path.open("rb") as f:
                    response = await self._client.post(
                        self._endpoint,
                        data=data,
                        files={"file": (path.name, f, "application/octet-stream")},
                    )
        except TimeoutError as exc:
            raise UploadError(None, f"Upload timed out after {self._total_timeout:g}s") from exc
        except httpx.TransportError as exc:
            raise UploadError(None, f"{type(exc).__name__}: {exc}") from exc
        except OSError as exc:
            raise UploadError(None, f"Could not read {path}: {exc}") from exc

        if not 200 <= response.status_code < 300:
            raise UploadError(response.status_code, _error_message(response))

        body = _json_or_none(response) or {}
        task_id = body.get("task_id") or body.get("id")
        outcome = UploadOutcome(
            status_code=response.status_code,
            task_id=str(task_id) if task_id is not None else None,
            status=str(body["status"]) if body.get("status") is not None else None,
        )
        if outcome.task_id:
            logger.info("Upload successful: %s -> task %s", path.name, outcome.task_id)
        else:
            logger.info("Upload successful: %s (HTTP %d)", path.name, outcome.status_code)
        if outcome.status:
            logger.debug("Remote status for %s: %s", path.name, outcome.status)
        return outcome

    async def check_connection(self) -> bool:
        """Probe the endpoint with an authenticated GET.

        A 404 or 405 still proves the server answered and accepted the
        credentials far enough to route the request.
        """
        try:
            response = await self._client.get(self._endpoint)
        except httpx.TransportError as exc:
            logger.warning("Endpoint %s unreachable: %s", self._endpoint, exc)
            return False
        logger.debug("Endpoint %s answered HTTP %d", self._endpoint, response.status_code)
        return response.status_code in REACHABLE_STATUS_CODES
