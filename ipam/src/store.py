from __future__ import annotations

import ipaddress
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Protocol

from kubernetes.client import ApiException, CustomObjectsApi

from ipam.src.policy import ReleasePolicy

LOGGER = logging.getLogger(__name__)

CRD_GROUP = "galaxy.k8s.io"
CRD_VERSION = "v1alpha1"
CRD_PLURAL = "floatingips"
CRD_KIND = "FloatingIP"
IP_TYPE_LABEL = "ipType"


class IPAMError(RuntimeError):
    """Raised when the allocation store cannot complete an operation."""


class ConflictError(IPAMError):
    """Raised when an IP is already allocated or was modified concurrently."""


@dataclass(frozen=True)
class FloatingIP:
    """One allocated address and the key that owns it."""

    key: str
    ip: ipaddress.IPv4Address
    policy: ReleasePolicy
    attr: str = ""
    update_time: datetime | None = None


class IPAM(Protocol):
    """Allocation store consumed by the resync engine.

    Implementations provide per-key atomicity only; there are no
    transactions spanning keys.
    """

    def name(self) -> str: ...

    def by_prefix(self, prefix: str) -> list[FloatingIP]: ...

    def by_ip(self, ip: ipaddress.IPv4Address) -> FloatingIP | None: ...

    def first(self, key: str) -> FloatingIP | None: ...

    def allocate_specific_ip(
        self, key: str, ip: ipaddress.IPv4Address, policy: ReleasePolicy, attr: str
    ) -> None: ...

    def release(self, key: str, ip: ipaddress.IPv4Address, reason: str) -> None: ...

    def update_key(self, old_key: str, new_key: str) -> None: ...


def utc_now() -> datetime:
    return datetime.now(UTC).replace(microsecond=0)


class CrdIPAM:
    """Allocation store backed by cluster-scoped ``FloatingIP`` custom resources.

    Each allocated IP is one object named after the address and labelled with
    the store name, so a primary and a secondary store can share the CRD.
    The API server supplies the per-key atomicity: creation fails with 409
    when the IP is taken, and updates carry the observed ``resourceVersion``.
    """

    def __init__(
        self,
        custom_api: CustomObjectsApi,
        store_name: str = "floatingip",
        now_fn: Callable[[], datetime] = utc_now,
    ) -> None:
        self.custom_api = custom_api
        self.store_name = store_name
        self.now_fn = now_fn

    def name(self) -> str:
        return self.store_name

    def _list_objects(self) -> list[dict[str, Any]]:
        try:
            result = self.custom_api.list_cluster_custom_object(
                group=CRD_GROUP,
                version=CRD_VERSION,
                plural=CRD_PLURAL,
                label_selector=f"{IP_TYPE_LABEL}={self.store_name}",
            )
        except ApiException as exc:
            raise IPAMError(f"[{self.store_name}] failed to list floating ips: {exc.reason}") from exc
        return list(result.get("items") or [])

    def _get_object(self, ip: ipaddress.IPv4Address) -> dict[str, Any] | None:
        try:
            return self.custom_api.get_cluster_custom_object(
                group=CRD_GROUP, version=CRD_VERSION, plural=CRD_PLURAL, name=str(ip)
            )
        except ApiException as exc:
            if exc.status == 404:
                return None
            raise IPAMError(f"[{self.store_name}] failed to get floating ip {ip}: {exc.reason}") from exc

    def _to_record(self, obj: dict[str, Any]) -> FloatingIP | None:
        metadata = obj.get("metadata") or {}
        labels = metadata.get("labels") or {}
        if labels.get(IP_TYPE_LABEL) != self.store_name:
            return None
        spec = obj.get("spec") or {}
        try:
            ip = ipaddress.IPv4Address(metadata.get("name", ""))
            policy = ReleasePolicy(int(spec.get("policy", 0)))
            raw_time = spec.get("updateTime")
            update_time = (
                datetime.fromisoformat(str(raw_time).replace("Z", "+00:00")) if raw_time else None
            )
        except (TypeError, ValueError) as exc:
            LOGGER.warning(
                "[%s] ignoring malformed floating ip object %s: %s",
                self.store_name,
                metadata.get("name"),
                exc,
            )
            return None
        return FloatingIP(
            key=str(spec.get("key") or ""),
            ip=ip,
            policy=policy,
            attr=str(spec.get("attribute") or ""),
            update_time=update_time,
        )

    def _records(self) -> list[FloatingIP]:
        records = []
        for obj in self._list_objects():
            record = self._to_record(obj)
            if record is not None:
                records.append(record)
        return records

    def by_prefix(self, prefix: str) -> list[FloatingIP]:
        return [record for record in self._records() if record.key.startswith(prefix)]

    def by_ip(self, ip: ipaddress.IPv4Address) -> FloatingIP | None:
        obj = self._get_object(ip)
        if obj is None:
            return None
        return self._to_record(obj)

    def first(self, key: str) -> FloatingIP | None:
        for record in self._records():
            if record.key == key:
                return record
        return None

    def _timestamp(self) -> str:
        return self.now_fn().isoformat().replace("+00:00", "Z")

    def allocate_specific_ip(
        self, key: str, ip: ipaddress.IPv4Address, policy: ReleasePolicy, attr: str
    ) -> None:
        body = {
            "apiVersion": f"{CRD_GROUP}/{CRD_VERSION}",
            "kind": CRD_KIND,
            "metadata": {"name": str(ip), "labels": {IP_TYPE_LABEL: self.store_name}},
            "spec": {
                "key": key,
                "attribute": attr,
                "policy": int(policy),
                "updateTime": self._timestamp(),
            },
        }
        try:
            self.custom_api.create_cluster_custom_object(
                group=CRD_GROUP, version=CRD_VERSION, plural=CRD_PLURAL, body=body
            )
        except ApiException as exc:
            if exc.status == 409:
                raise ConflictError(f"[{self.store_name}] ip {ip} is already allocated") from exc
            raise IPAMError(f"[{self.store_name}] failed to allocate {ip} to {key}: {exc.reason}") from exc

    def release(self, key: str, ip: ipaddress.IPv4Address, reason: str) -> None:
        record = self.by_ip(ip)
        if record is None:
            return
        if record.key != key:
            raise ConflictError(
                f"[{self.store_name}] refusing to release {ip}: owned by {record.key}, not {key}"
            )
        try:
            self.custom_api.delete_cluster_custom_object(
                group=CRD_GROUP, version=CRD_VERSION, plural=CRD_PLURAL, name=str(ip)
            )
        except ApiException as exc:
            if exc.status == 404:
                return
            raise IPAMError(f"[{self.store_name}] failed to release {ip} from {key}: {exc.reason}") from exc
        LOGGER.debug("[%s] deleted floating ip object %s (%s)", self.store_name, ip, reason)

    def update_key(self, old_key: str, new_key: str) -> None:
        for obj in self._list_objects():
            record = self._to_record(obj)
            if record is None or record.key != old_key:
                continue
            obj.setdefault("spec", {})
            obj["spec"]["key"] = new_key
            obj["spec"]["updateTime"] = self._timestamp()
            try:
                self.custom_api.replace_cluster_custom_object(
                    group=CRD_GROUP,
                    version=CRD_VERSION,
                    plural=CRD_PLURAL,
                    name=str(record.ip),
                    body=obj,
                )
            except ApiException as exc:
                if exc.status == 409:
                    raise ConflictError(
                        f"[{self.store_name}] floating ip {record.ip} changed while rebinding"
                    ) from exc
                raise IPAMError(
                    f"[{self.store_name}] failed to rebind {record.ip} from {old_key} "
                    f"to {new_key}: {exc.reason}"
                ) from exc
