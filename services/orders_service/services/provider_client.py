"""
Fulfillment provider API client.

Provides async methods for:
- Submitting a download task for an item URL
- Polling a task's status
- Fetching (or regenerating) the final download link
- Cancelling a task

The client never retries. Every failure is raised as a classified
ProviderError whose ``retryable`` flag tells the caller what to do.
"""

import enum
from dataclasses import dataclass
from typing import Optional

import httpx
from libs.common.config import Settings, get_settings
from libs.common.logging import get_logger

logger = get_logger(__name__)

_READY_STATUSES = frozenset({"ready", "completed", "finished"})
_ERROR_STATUSES = frozenset({"failed", "error"})
_QUEUED_STATUSES = frozenset({"queued", "pending", "waiting"})


class TaskStatus(str, enum.Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    READY = "ready"
    ERROR = "error"


@dataclass
class TaskPoll:
    """Normalised provider task state."""

    status: TaskStatus
    download_url: Optional[str] = None
    file_name: Optional[str] = None
    file_size: Optional[int] = None
    error_detail: Optional[str] = None


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class ProviderError(Exception):
    """Base exception for provider API errors."""

    code = "provider_error"
    retryable = False

    def __init__(
        self, message: str, status_code: int = None, response_data: dict = None
    ):
        self.message = message
        self.status_code = status_code
        self.response_data = response_data or {}
        super().__init__(message)


class ProviderAuthError(ProviderError):
    code = "provider_auth_error"


class ProviderRejected(ProviderError):
    code = "provider_rejected"


class SiteUnsupported(ProviderError):
    code = "site_unsupported"


class NetworkError(ProviderError):
    code = "network_error"
    retryable = True


class RateLimited(ProviderError):
    code = "rate_limited"
    retryable = True

    def __init__(self, message: str, retry_after: Optional[float] = None, **kwargs):
        self.retry_after = retry_after
        super().__init__(message, **kwargs)


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class ProviderClient:
    """Async client for the fulfillment provider's task API."""

    def __init__(
        self,
        base_url: str = None,
        api_key: str = None,
        timeout: float = None,
        transport: httpx.AsyncBaseTransport = None,
        settings: Settings = None,
    ):
        settings = settings or get_settings()
        self.base_url = (base_url or settings.PROVIDER_BASE_URL).rstrip("/")
        self.timeout = timeout or settings.PROVIDER_TIMEOUT_SECONDS
        self._transport = transport
        self._headers = {
            "X-Api-Key": api_key if api_key is not None else settings.PROVIDER_API_KEY,
            "Accept": "application/json",
        }

    async def _request(
        self,
        method: str,
        endpoint: str,
        *,
        json_data: dict = None,
        not_found_error: type[ProviderError] = ProviderRejected,
    ) -> dict:
        """Make one request and classify any failure."""
        url = f"{self.base_url}{endpoint}"
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.request(
                    method, url, headers=self._headers, json=json_data
                )
        except httpx.TimeoutException as exc:
            raise NetworkError(
                f"Provider request timed out: {method} {endpoint}"
            ) from exc
        except httpx.TransportError as exc:
            raise NetworkError(f"Provider unreachable: {exc}") from exc

        try:
            data = response.json()
        except ValueError:
            data = None

        if response.is_success:
            if not isinstance(data, dict):
                raise NetworkError(
                    "Provider returned a non-JSON response",
                    status_code=response.status_code,
                )
            return data

        data = data if isinstance(data, dict) else {}
        message = _message_of(data) or f"HTTP {response.status_code}"
        status_code = response.status_code
        logger.warning(
            "Provider API error: %s %s -> %d %s", method, endpoint, status_code, message
        )

        if status_code == 429:
            raise RateLimited(
                message,
                retry_after=_retry_after(response),
                status_code=status_code,
                response_data=data,
            )
        if status_code >= 500:
            raise NetworkError(message, status_code=status_code, response_data=data)
        if status_code in (401, 403):
            raise ProviderAuthError(
                message, status_code=status_code, response_data=data
            )
        if status_code in (404, 422):
            raise not_found_error(message, status_code=status_code, response_data=data)
        raise ProviderRejected(message, status_code=status_code, response_data=data)

    # =========================================================================
    # Task Methods
    # =========================================================================

    async def submit(
        self, item_url: str, *, site_id: str = None, item_id: str = None
    ) -> str:
        """
        Submit a download task.

        Returns:
            The provider's task id.

        Raises:
            SiteUnsupported, ProviderAuthError, ProviderRejected (final);
            NetworkError, RateLimited (retryable).
        """
        payload = {"url": item_url}
        if site_id:
            payload["site"] = site_id
        if item_id:
            payload["item_id"] = item_id

        data = await self._request(
            "POST", "/task", json_data=payload, not_found_error=SiteUnsupported
        )
        if data.get("success") is False:
            raise ProviderRejected(
                _message_of(data) or "Provider refused the task", response_data=data
            )

        task_id = data.get("task_id") or data.get("taskId")
        if not task_id:
            raise NetworkError(
                "Provider accepted the task without a task id", response_data=data
            )
        return str(task_id)

    async def poll(self, task_id: str) -> TaskPoll:
        """Fetch and normalise the current state of a task."""
        data = await self._request("GET", f"/task/{task_id}")
        return _parse_task(data)

    async def download_link(self, task_id: str) -> TaskPoll:
        """
        Ask for a (fresh) download link of a finished task.

        Used when a task reports ready without a link, and to regenerate an
        expired link for a completed order.
        """
        data = await self._request("GET", f"/task/{task_id}/download")
        return _parse_task(data)

    async def cancel(self, task_id: str) -> bool:
        """Best-effort cancel. Returns whether the provider acknowledged it."""
        data = await self._request("POST", f"/task/{task_id}/cancel")
        return data.get("success", True) is not False


def get_provider_client() -> ProviderClient:
    """Get a ProviderClient configured from settings."""
    return ProviderClient()


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------


def _parse_task(data: dict) -> TaskPoll:
    """
    Normalise a task payload.

    A link or file name that is not a string raises NetworkError, which the
    pipeline retries until the order's deadline. An unreadable size is dropped.
    """
    raw_status = str(data.get("status") or "").lower()
    download_url = _text_field(data, "downloadUrl", "download_url", "downloadLink")
    file_name = _text_field(data, "fileName", "file_name")
    file_size = _parse_size(data.get("fileSize") or data.get("file_size"))
    error_detail = _message_of(data)

    failed = data.get("success") is False or data.get("error") is True
    if raw_status in _ERROR_STATUSES or failed:
        status = TaskStatus.ERROR
    elif raw_status in _READY_STATUSES or download_url:
        status = TaskStatus.READY
    elif raw_status in _QUEUED_STATUSES:
        status = TaskStatus.QUEUED
    else:
        status = TaskStatus.PROCESSING

    return TaskPoll(
        status=status,
        download_url=download_url,
        file_name=file_name,
        file_size=file_size,
        error_detail=(error_detail or "provider reported an error")
        if status == TaskStatus.ERROR
        else None,
    )


def _text_field(data: dict, *keys: str) -> Optional[str]:
    for key in keys:
        value = data.get(key)
        if value is None or value == "":
            continue
        if not isinstance(value, str):
            raise NetworkError(
                f"Provider returned a malformed {key}", response_data=data
            )
        return value
    return None


def _parse_size(value) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value >= 0 else None
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def _message_of(data: dict) -> Optional[str]:
    for key in ("message", "error", "detail"):
        value = data.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def _retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None
