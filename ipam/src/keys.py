from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any

DEPLOYMENT_KEY_PREFIX = "_deployment_"
POOL_KEY_PREFIX = "_ippool__"
POOL_ANNOTATION = "tke.cloud.tencent.com/eni-ip-pool"


class KeyKind(enum.Enum):
    """Ownership shape encoded in an allocation store key."""

    STATEFULSET_POD = "statefulset_pod"
    POD = "pod"
    DEPLOYMENT_POD = "deployment_pod"
    DEPLOYMENT = "deployment"
    POOL = "pool"
    UNRECOGNIZED = "unrecognized"


@dataclass(frozen=True)
class KeyInfo:
    """Structured view of a store key.

    ``app_name`` is the stateful set or deployment name, ``pod_name`` the
    ordinal suffix for stateful set pods or the full pod name for deployment
    pods. Aggregate deployment keys leave ``pod_name`` empty.
    """

    kind: KeyKind
    key: str
    namespace: str = ""
    app_name: str = ""
    pod_name: str = ""
    pool: str = ""

    @property
    def app_full_name(self) -> str:
        if not self.app_name:
            return ""
        return fmt_key(self.app_name, self.namespace)


def fmt_key(name: str, namespace: str) -> str:
    return f"{namespace}_{name}"


def key_in_db(pod: Any) -> str:
    return fmt_key(pod.metadata.name, pod.metadata.namespace)


def key_for_deployment_pod(pod: Any, deployment: str) -> str:
    return f"{DEPLOYMENT_KEY_PREFIX}{pod.metadata.namespace}_{deployment}_{pod.metadata.name}"


def deployment_prefix(deployment: str, namespace: str) -> str:
    return f"{DEPLOYMENT_KEY_PREFIX}{namespace}_{deployment}_"


def pool_prefix(pool: str) -> str:
    return f"{POOL_KEY_PREFIX}{pool}_"


def get_pool(annotations: dict[str, str] | None) -> str:
    if not annotations:
        return ""
    return annotations.get(POOL_ANNOTATION) or ""


def fmt_deployment_pool_prefix(
    template_annotations: dict[str, str] | None, deployment: str, namespace: str
) -> str:
    """Return the aggregate key reserving IPs for a deployment.

    Pools may be shared across namespaces, so a pool key carries no namespace.
    """
    pool = get_pool(template_annotations)
    if pool:
        return pool_prefix(pool)
    return deployment_prefix(deployment, namespace)


def deployment_pool_prefix(deployment: Any) -> str:
    template_metadata = deployment.spec.template.metadata
    annotations = getattr(template_metadata, "annotations", None) if template_metadata else None
    return fmt_deployment_pool_prefix(
        annotations, deployment.metadata.name, deployment.metadata.namespace
    )


def statefulset_name(statefulset: Any) -> str:
    return fmt_key(statefulset.metadata.name, statefulset.metadata.namespace)


def deployment_name(deployment: Any) -> str:
    return fmt_key(deployment.metadata.name, deployment.metadata.namespace)


def is_pool_key(key: str) -> bool:
    return key.startswith(POOL_KEY_PREFIX)


def is_deployment_key(key: str) -> bool:
    return key.startswith(DEPLOYMENT_KEY_PREFIX)


def parse_pod_index(key: str) -> int:
    """Return the ordinal after the last ``-`` of a stateful set pod key."""
    return int(key.rsplit("-", 1)[-1])


def resolve_app_pod_name(key: str) -> tuple[str, str, str]:
    """Split ``<namespace>_<app>-<ordinal>`` into ``(app, ordinal, namespace)``.

    ``"kube-system_fip-bj-111"`` resolves to ``("fip-bj", "111", "kube-system")``.
    Returns three empty strings when the key does not have this shape.
    """
    parts = key.split("_")
    if len(parts) != 2:
        return "", "", ""
    app, sep, ordinal = parts[1].rpartition("-")
    if not sep:
        return "", "", ""
    return app, ordinal, parts[0]


def resolve_deployment_pod_name(key: str) -> tuple[str, str, str]:
    """Split a deployment key into ``(deployment, pod, namespace)``.

    ``"_deployment_default_dp1_dp1-rs1-pod1"`` resolves to
    ``("dp1", "dp1-rs1-pod1", "default")``; the aggregate key
    ``"_deployment_default_dp1_"`` resolves with an empty pod name.
    """
    if not is_deployment_key(key):
        return "", "", ""
    parts = key.split("_")
    if len(parts) == 4:
        return parts[3], "", parts[2]
    if len(parts) == 5:
        return parts[3], parts[4], parts[2]
    return "", "", ""


def parse_key(key: str) -> KeyInfo:
    """Decode any store key into a :class:`KeyInfo`. Never raises."""
    if not key:
        return KeyInfo(kind=KeyKind.UNRECOGNIZED, key=key)

    if is_pool_key(key):
        pool = key[len(POOL_KEY_PREFIX):]
        if pool.endswith("_"):
            pool = pool[:-1]
        if not pool:
            return KeyInfo(kind=KeyKind.UNRECOGNIZED, key=key)
        return KeyInfo(kind=KeyKind.POOL, key=key, pool=pool)

    if is_deployment_key(key):
        deployment, pod, namespace = resolve_deployment_pod_name(key)
        if not namespace or not deployment:
            return KeyInfo(kind=KeyKind.UNRECOGNIZED, key=key)
        kind = KeyKind.DEPLOYMENT_POD if pod else KeyKind.DEPLOYMENT
        return KeyInfo(
            kind=kind, key=key, namespace=namespace, app_name=deployment, pod_name=pod
        )

    app, ordinal, namespace = resolve_app_pod_name(key)
    if namespace and app:
        return KeyInfo(
            kind=KeyKind.STATEFULSET_POD,
            key=key,
            namespace=namespace,
            app_name=app,
            pod_name=ordinal,
        )

    parts = key.split("_")
    if len(parts) == 2 and all(parts):
        return KeyInfo(kind=KeyKind.POD, key=key, namespace=parts[0], pod_name=parts[1])
    return KeyInfo(kind=KeyKind.UNRECOGNIZED, key=key)
