from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any

from kubernetes.client import AppsV1Api, CoreV1Api

from ipam.src.keys import (
    deployment_name,
    key_for_deployment_pod,
    key_in_db,
    statefulset_name,
)
from ipam.src.policy import has_resource_name

LOGGER = logging.getLogger(__name__)


class ClusterCache:
    """List-based snapshot of pods, stateful sets and deployments.

    Each kind is marked synced after its first successful list. A failed
    refresh keeps serving the previous listing of that kind.
    """

    def __init__(self, core_api: CoreV1Api, apps_api: AppsV1Api) -> None:
        self.core_api = core_api
        self.apps_api = apps_api
        self._lock = threading.Lock()
        self._pods: list[Any] = []
        self._statefulsets: list[Any] = []
        self._deployments: list[Any] = []
        self._pods_synced = False
        self._statefulsets_synced = False
        self._deployments_synced = False

    def refresh(self) -> None:
        """Re-list every kind; propagates the first ``ApiException``."""
        pods = self.core_api.list_pod_for_all_namespaces().items or []
        with self._lock:
            self._pods = list(pods)
            self._pods_synced = True

        statefulsets = self.apps_api.list_stateful_set_for_all_namespaces().items or []
        with self._lock:
            self._statefulsets = list(statefulsets)
            self._statefulsets_synced = True

        deployments = self.apps_api.list_deployment_for_all_namespaces().items or []
        with self._lock:
            self._deployments = list(deployments)
            self._deployments_synced = True

        LOGGER.debug(
            "Cluster cache refreshed: %d pods, %d statefulsets, %d deployments",
            len(pods),
            len(statefulsets),
            len(deployments),
        )

    def list_pods(self) -> list[Any]:
        with self._lock:
            return list(self._pods)

    def list_statefulsets(self) -> list[Any]:
        with self._lock:
            return list(self._statefulsets)

    def list_deployments(self) -> list[Any]:
        with self._lock:
            return list(self._deployments)

    def pods_synced(self) -> bool:
        return self._pods_synced

    def statefulsets_synced(self) -> bool:
        return self._statefulsets_synced

    def deployments_synced(self) -> bool:
        return self._deployments_synced


@dataclass
class ClusterSnapshot:
    """Live state for one reconciliation pass, keyed the way the store keys records."""

    existing_pods: dict[str, Any] = field(default_factory=dict)
    statefulsets: dict[str, Any] = field(default_factory=dict)
    deployments: dict[str, Any] = field(default_factory=dict)


def evicted(pod: Any) -> bool:
    status = getattr(pod, "status", None)
    return (
        getattr(status, "phase", None) == "Failed"
        and getattr(status, "reason", None) == "Evicted"
    )


def pod_belong_to_deployment(pod: Any) -> str:
    """Return the owning deployment's name, or ``""`` if the pod has none.

    Deployment pods are owned by a single ReplicaSet named
    ``<deployment>-<pod-template-hash>``.
    """
    owners = getattr(pod.metadata, "owner_references", None) or []
    if len(owners) != 1 or owners[0].kind != "ReplicaSet":
        return ""
    replicaset = owners[0].name or ""
    labels = getattr(pod.metadata, "labels", None) or {}
    template_hash = labels.get("pod-template-hash")
    if template_hash and replicaset.endswith(f"-{template_hash}"):
        return replicaset[: -len(template_hash) - 1]
    name, sep, _ = replicaset.rpartition("-")
    return name if sep else ""


def pod_key(pod: Any) -> str:
    deployment = pod_belong_to_deployment(pod)
    if deployment:
        return key_for_deployment_pod(pod, deployment)
    return key_in_db(pod)


def list_wanted_pods(cache: ClusterCache, resource_name: str) -> list[Any]:
    return [pod for pod in cache.list_pods() if has_resource_name(pod.spec, resource_name)]


def _template_spec(app: Any) -> Any:
    return app.spec.template.spec


def build_snapshot(cache: ClusterCache, resource_name: str) -> ClusterSnapshot:
    snapshot = ClusterSnapshot()

    for pod in list_wanted_pods(cache, resource_name):
        if evicted(pod):
            continue
        snapshot.existing_pods[pod_key(pod)] = pod

    for statefulset in cache.list_statefulsets():
        if has_resource_name(_template_spec(statefulset), resource_name):
            snapshot.statefulsets[statefulset_name(statefulset)] = statefulset

    for deployment in cache.list_deployments():
        if has_resource_name(_template_spec(deployment), resource_name):
            snapshot.deployments[deployment_name(deployment)] = deployment

    return snapshot
