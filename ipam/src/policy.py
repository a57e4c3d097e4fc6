from __future__ import annotations

import enum
import ipaddress
import json
from dataclasses import dataclass
from typing import Any

from ipam.src.keys import get_pool

RELEASE_POLICY_ANNOTATION = "k8s.v1.cni.galaxy.io/release-policy"
CNI_ARGS_ANNOTATION = "k8s.v1.cni.galaxy.io/args"
DEFAULT_RESOURCE_NAME = "tke.cloud.tencent.com/eni-ip"


class ReleasePolicy(enum.IntEnum):
    """Retention policy stored alongside every floating IP record."""

    POD_DELETE = 0
    IMMUTABLE = 1
    NEVER = 2


_POLICY_BY_ANNOTATION = {
    "immutable": ReleasePolicy.IMMUTABLE,
    "never": ReleasePolicy.NEVER,
}


class AttrError(ValueError):
    """Raised when a stored attribute blob cannot be decoded."""


@dataclass(frozen=True)
class Attr:
    """Attribute blob persisted with a record: the node and optional pool."""

    node_name: str = ""
    pool: str = ""

    def to_json(self) -> str:
        payload = {"node": self.node_name}
        if self.pool:
            payload["pool"] = self.pool
        return json.dumps(payload, separators=(",", ":"))

    @classmethod
    def from_json(cls, raw: str | None) -> Attr:
        if not raw:
            raise AttrError("empty attribute")
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise AttrError(f"invalid attribute {raw!r}: {exc}") from exc
        if not isinstance(payload, dict):
            raise AttrError(f"invalid attribute {raw!r}: not an object")
        return cls(
            node_name=str(payload.get("node") or ""),
            pool=str(payload.get("pool") or ""),
        )


@dataclass(frozen=True)
class IPInfo:
    ip: ipaddress.IPv4Interface
    vlan: int = 0
    gateway: str = ""


def _annotations(metadata: Any) -> dict[str, str]:
    annotations = getattr(metadata, "annotations", None)
    if not isinstance(annotations, dict):
        return {}
    return annotations


def parse_release_policy(metadata: Any) -> ReleasePolicy:
    """Resolve the release policy from pod or pod template metadata.

    Missing or unrecognized annotation values fall back to ``POD_DELETE``.
    """
    value = _annotations(metadata).get(RELEASE_POLICY_ANNOTATION, "")
    return _POLICY_BY_ANNOTATION.get(value.strip().lower(), ReleasePolicy.POD_DELETE)


def has_resource_name(pod_spec: Any, resource_name: str) -> bool:
    """Return True if any container requests or limits ``resource_name``."""
    containers = getattr(pod_spec, "containers", None) or []
    for container in containers:
        resources = getattr(container, "resources", None)
        if resources is None:
            continue
        for amounts in (getattr(resources, "requests", None), getattr(resources, "limits", None)):
            if isinstance(amounts, dict) and resource_name in amounts:
                return True
    return False


def get_attr(pod: Any, node_name: str) -> str:
    """Serialize the attribute blob recorded when a pod's IP is allocated."""
    return Attr(node_name=node_name, pool=get_pool(_annotations(pod.metadata))).to_json()


def parse_ip_infos(annotation: str) -> list[IPInfo]:
    """Decode the CNI args annotation into the ordered list of ipinfos.

    The annotation looks like
    ``{"common": {"ipinfos": [{"ip": "10.0.0.2/24", "vlan": 0, "gateway": "10.0.0.1"}]}}``.
    """
    try:
        payload = json.loads(annotation)
    except json.JSONDecodeError as exc:
        raise ValueError(f"invalid {CNI_ARGS_ANNOTATION} annotation: {exc}") from exc

    common = payload.get("common") if isinstance(payload, dict) else None
    raw_infos = common.get("ipinfos") if isinstance(common, dict) else None
    if not isinstance(raw_infos, list):
        return []

    infos: list[IPInfo] = []
    for raw in raw_infos:
        if not isinstance(raw, dict) or not raw.get("ip"):
            raise ValueError(f"ipinfo without ip in {CNI_ARGS_ANNOTATION}: {raw!r}")
        try:
            ip = ipaddress.IPv4Interface(raw["ip"])
        except ValueError as exc:
            raise ValueError(f"invalid ip {raw['ip']!r} in {CNI_ARGS_ANNOTATION}") from exc
        infos.append(
            IPInfo(ip=ip, vlan=int(raw.get("vlan") or 0), gateway=str(raw.get("gateway") or ""))
        )
    return infos
