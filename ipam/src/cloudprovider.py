from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

import requests

LOGGER = logging.getLogger(__name__)


class CloudProviderError(RuntimeError):
    """Raised when the cloud provider rejects or fails an IP operation."""


@dataclass(frozen=True)
class UnassignIPRequest:
    node_name: str
    ip_address: str


class CloudProvider(Protocol):
    def unassign_ip(self, request: UnassignIPRequest) -> None: ...


class HTTPCloudProvider:
    """Cloud provider client unbinding floating IPs from nodes over HTTP."""

    unassign_path = "/v1/unassign-ip"

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 10.0,
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.session = session or requests.Session()

    def unassign_ip(self, request: UnassignIPRequest) -> None:
        url = f"{self.base_url}{self.unassign_path}"
        payload = {"nodeName": request.node_name, "ipAddress": request.ip_address}
        try:
            response = self.session.post(url, json=payload, timeout=self.timeout_seconds)
        except requests.RequestException as exc:
            raise CloudProviderError(
                f"unassign {request.ip_address} from {request.node_name} failed: {exc}"
            ) from exc

        if not response.ok:
            raise CloudProviderError(
                f"unassign {request.ip_address} from {request.node_name} failed: "
                f"HTTP {response.status_code} {response.text.strip()}"
            )
        LOGGER.info("Unassigned ip %s from node %s", request.ip_address, request.node_name)
