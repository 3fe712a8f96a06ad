from typing import Optional

import httpx
import structlog

from ..config import settings


logger = structlog.get_logger(__name__)


class NetworkProbe:
    def is_network_online(self) -> bool:
        raise NotImplementedError


class StaticNetworkProbe(NetworkProbe):
    """Reachability decided by the platform layer, which flips it on connectivity changes."""

    def __init__(self, online: bool = True):
        self.online = online

    def set_online(self, online: bool) -> None:
        self.online = online

    def is_network_online(self) -> bool:
        return self.online


class HttpNetworkProbe(NetworkProbe):
    """HEAD request against a health URL. Any error or timeout counts as offline."""

    def __init__(
        self,
        url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.url = url or settings.network_probe_url or settings.api_base_url
        self.timeout = timeout or settings.network_probe_timeout_s
        self.transport = transport

    def is_network_online(self) -> bool:
        if not self.url:
            return False
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.head(self.url)
            return response.status_code < 500
        except httpx.HTTPError as e:
            logger.debug("network_probe_failed", url=self.url, error=str(e))
            return False
