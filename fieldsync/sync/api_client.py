"""
Sync API client
Pull (GET) and push (POST) requests against the field-service backend.
"""
from typing import Any, Dict, List, Optional

import httpx
import structlog

from ..config import settings
from ..errors import NotConfiguredError, RejectedMutationError, TransientSyncError


logger = structlog.get_logger(__name__)

# 4xx codes that say "try again later" rather than "this payload is wrong"
RETRYABLE_CLIENT_STATUSES = {401, 403, 408, 425, 429}


class SyncApiClient:
    """Client for the delta-pull / delta-push sync endpoints"""

    def __init__(
        self,
        base_url: Optional[str] = None,
        auth_token: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.base_url = (base_url or settings.api_base_url or "").rstrip("/")
        self.auth_token = auth_token or settings.api_token
        self.timeout = timeout or settings.http_timeout_s
        self.transport = transport

    def configure(self, base_url: str, auth_token: str) -> None:
        self.base_url = base_url.rstrip("/")
        self.auth_token = auth_token

    @property
    def is_configured(self) -> bool:
        return bool(self.base_url and self.auth_token)

    def _get_auth_header(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.auth_token}"}

    def _request(self, method: str, endpoint: str, timeout: Optional[float] = None, **kwargs) -> Any:
        """Make an HTTP request; map failures onto transient vs rejected errors"""
        if not self.is_configured:
            raise NotConfiguredError("Sync API client has no base URL or auth token")

        url = f"{self.base_url}/{endpoint.lstrip('/')}"
        headers = self._get_auth_header()
        headers.update(kwargs.pop("headers", {}))

        try:
            with httpx.Client(timeout=timeout or self.timeout, transport=self.transport) as client:
                response = client.request(method, url, headers=headers, **kwargs)
                response.raise_for_status()
                if not response.content:
                    return {}
                return response.json()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            detail = _error_detail(e.response)
            logger.warning("sync_api_http_error", method=method, endpoint=endpoint, status=status, detail=detail)
            if status >= 500 or status in RETRYABLE_CLIENT_STATUSES:
                raise TransientSyncError(f"{status}: {detail}", status_code=status) from e
            raise RejectedMutationError(f"{status}: {detail}", status_code=status) from e
        except httpx.TransportError as e:
            # Timeouts and connection failures fail closed: treated as offline
            logger.warning("sync_api_unreachable", method=method, endpoint=endpoint, error=str(e))
            raise TransientSyncError(f"network error: {e}") from e
        except ValueError as e:
            raise TransientSyncError(f"invalid JSON from {endpoint}: {e}") from e

    def pull(self, endpoint: str, params: Dict[str, Any]) -> Dict[str, Any]:
        """
        Fetch one page of server changes.

        Args:
            endpoint: Pull endpoint (e.g. /work-orders/sync)
            params: since/cursor/limit plus entity scope parameters

        Returns:
            Normalized page: {"items": [...], "nextCursor": str|None, "hasMore": bool, "total": int|None}
        """
        query = {k: v for k, v in params.items() if v is not None}
        data = self._request("GET", endpoint, params=query)
        if isinstance(data, list):
            return {"items": data, "nextCursor": None, "hasMore": False, "total": len(data)}
        items = data.get("items")
        if items is None:
            items = data.get("data") or []
        return {
            "items": items,
            "nextCursor": data.get("nextCursor", data.get("cursor")),
            "hasMore": bool(data.get("hasMore", False)),
            "total": data.get("total"),
        }

    def push(self, endpoint: str, mutations: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """
        Send a batch of mutations.

        Returns:
            Per-mutation results: [{"mutationId", "status", "error", "serverId"?}]
        """
        data = self._request("POST", endpoint, json={"mutations": mutations})
        if isinstance(data, list):
            return data
        return data.get("results") or []

    def post(self, endpoint: str, body: Dict[str, Any], timeout: Optional[float] = None) -> Dict[str, Any]:
        return self._request("POST", endpoint, json=body, timeout=timeout)


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:500]
    if isinstance(body, dict):
        message = body.get("message") or body.get("error") or body
        if isinstance(message, list):
            message = "; ".join(str(m) for m in message)
        return str(message)[:500]
    return str(body)[:500]
