from __future__ import annotations

import ipaddress
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from ipam.src.cloudprovider import CloudProvider, CloudProviderError, UnassignIPRequest
from ipam.src.keys import (
    KeyInfo,
    KeyKind,
    deployment_pool_prefix,
    deployment_prefix,
    fmt_key,
    is_deployment_key,
    is_pool_key,
    parse_key,
    parse_pod_index,
    pool_prefix,
    statefulset_name,
)
from ipam.src.metrics import METRICS
from ipam.src.policy import (
    CNI_ARGS_ANNOTATION,
    DEFAULT_RESOURCE_NAME,
    Attr,
    AttrError,
    ReleasePolicy,
    get_attr,
    has_resource_name,
    parse_ip_infos,
    parse_release_policy,
)
from ipam.src.snapshot import (
    ClusterCache,
    ClusterSnapshot,
    build_snapshot,
    list_wanted_pods,
    pod_key,
)
from ipam.src.store import IPAM, FloatingIP, IPAMError

LOGGER = logging.getLogger(__name__)

RELEASE_LABEL_MISMATCH = "deletedAndLabelMissMatchPod"
RELEASE_IP_MUTABLE = "deletedAndIPMutablePod"
RELEASE_SCALED_DOWN_DEPLOYMENT = "deletedAndScaledDownDpPod"
RELEASE_SCALED_DOWN_STATEFULSET = "deletedAndScaledDownSSPod"

_RESYNC_KINDS = {KeyKind.STATEFULSET_POD, KeyKind.DEPLOYMENT_POD, KeyKind.DEPLOYMENT}


class ConflictingIPError(IPAMError):
    """Raised when a pod's IP is already stored under another key."""


@dataclass(frozen=True)
class ResyncObj:
    key_info: KeyInfo
    attr: str
    ip: ipaddress.IPv4Address

    @property
    def app_full_name(self) -> str:
        return self.key_info.app_full_name


@dataclass
class ResyncCandidates:
    """Records collected from the store at the start of a pass.

    ``assign`` holds every parseable record; those without a live pod get
    their cloud provider binding removed. ``store`` holds the records whose
    store entry may be released or rebound.
    """

    assign: dict[str, ResyncObj] = field(default_factory=dict)
    store: dict[str, ResyncObj] = field(default_factory=dict)


def release_ip(ipam: IPAM, key: str, reason: str) -> bool:
    """Release the first IP stored under ``key``. Returns False if none was stored."""
    fip = ipam.first(key)
    if fip is None:
        return False
    ipam.release(key, fip.ip, reason)
    LOGGER.info("[%s] released floating ip %s from %s for %s", ipam.name(), fip.ip, key, reason)
    METRICS.released_total.labels(ipam=ipam.name(), reason=reason).inc()
    return True


def _template(app: Any) -> Any:
    return app.spec.template


class FloatingIPResyncer:
    """Keeps the floating IP stores consistent with the pods running in the cluster.

    Two passes are exposed, both driven by a periodic trigger:

    ``sync_pod_ips_into_store``
        Records the IP each running pod reports in its CNI args annotation,
        refusing to overwrite an IP already held by another key.
    ``reconcile``
        Walks every stored record and releases, rebinds or leaves it based on
        the record's release policy and the state of the owning pod,
        stateful set or deployment. Cloud provider bindings of records
        without a live pod are undone first.

    Both passes are skipped until the cluster cache has synced pods,
    stateful sets and deployments. Errors on a single record are logged and
    the record is retried on the next pass.
    """

    def __init__(
        self,
        cache: ClusterCache,
        ipam: IPAM,
        *,
        second_ipam: IPAM | None = None,
        cloud_provider: CloudProvider | None = None,
        resource_name: str = DEFAULT_RESOURCE_NAME,
        second_resource_name: str | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.cache = cache
        self.ipam = ipam
        self.second_ipam = second_ipam
        self.cloud_provider = cloud_provider
        self.resource_name = resource_name
        self.second_resource_name = second_resource_name
        self.logger = logger or LOGGER

    def _ipams(self) -> list[IPAM]:
        ipams = [self.ipam]
        if self.second_ipam is not None:
            ipams.append(self.second_ipam)
        return ipams

    def store_ready(self) -> bool:
        if not self.cache.pods_synced():
            self.logger.debug("the pod store has not been synced yet")
            return False
        if not self.cache.statefulsets_synced():
            self.logger.debug("the statefulset store has not been synced yet")
            return False
        if not self.cache.deployments_synced():
            self.logger.debug("the deployment store has not been synced yet")
            return False
        return True

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def reconcile(self) -> None:
        """Run a reconciliation pass against every configured store."""
        for ipam in self._ipams():
            try:
                if not self.resync_pods(ipam):
                    return
            except IPAMError:
                self.logger.exception("[%s] reconciliation pass failed", ipam.name())

    def classify(self, records: Iterable[FloatingIP]) -> ResyncCandidates:
        candidates = ResyncCandidates()
        for fip in records:
            if not fip.key or is_pool_key(fip.key):
                continue
            info = parse_key(fip.key)
            if info.kind not in _RESYNC_KINDS:
                self.logger.warning("unexpected key: %s", fip.key)
                continue

            obj = ResyncObj(key_info=info, attr=fip.attr, ip=fip.ip)
            # Cloud provider bindings are undone for every policy.
            candidates.assign[fip.key] = obj
            if fip.policy == ReleasePolicy.NEVER:
                # Stateful set pods keep their IP by pod name and aggregate
                # deployment keys are reservations already, so only
                # deployment pod keys are rebound.
                if info.kind == KeyKind.DEPLOYMENT_POD:
                    candidates.store[fip.key] = obj
                continue
            candidates.store[fip.key] = obj
        return candidates

    def resync_pods(self, ipam: IPAM) -> bool:
        """Reconcile one store. Returns False when the pass was skipped."""
        if not self.store_ready():
            METRICS.resync_skipped_total.labels(phase="reconcile").inc()
            return False
        self.logger.info("[%s] resync pods", ipam.name())
        METRICS.resync_runs_total.labels(ipam=ipam.name()).inc()

        with METRICS.resync_duration_seconds.labels(ipam=ipam.name()).time():
            candidates = self.classify(ipam.by_prefix(""))
            snapshot = build_snapshot(self.cache, self.resource_name)
            if self.logger.isEnabledFor(logging.DEBUG):
                pod_map = {
                    key: fmt_key(pod.metadata.name, pod.metadata.namespace)
                    for key, pod in snapshot.existing_pods.items()
                }
                self.logger.debug("existing pods %s", pod_map)

            self._unassign_deleted_pods(candidates, snapshot)

            for key, obj in candidates.store.items():
                if key in snapshot.existing_pods:
                    continue
                try:
                    self._resync_record(ipam, key, obj, snapshot)
                except (IPAMError, AttrError) as exc:
                    METRICS.record_errors_total.labels(ipam=ipam.name()).inc()
                    self.logger.warning("[%s] failed to resync %s: %s", ipam.name(), key, exc)
        return True

    def _unassign_deleted_pods(
        self, candidates: ResyncCandidates, snapshot: ClusterSnapshot
    ) -> None:
        for key, obj in candidates.assign.items():
            if key in snapshot.existing_pods:
                continue
            try:
                attr = Attr.from_json(obj.attr)
            except AttrError as exc:
                self.logger.error("failed to unmarshal attr %s for pod %s: %s", obj.attr, key, exc)
                continue
            if not attr.node_name:
                self.logger.error("empty nodeName for %s in db", key)
                continue
            try:
                self._unassign(UnassignIPRequest(node_name=attr.node_name, ip_address=str(obj.ip)))
            except CloudProviderError as exc:
                # Leave the store record alone so the next pass retries both steps.
                candidates.store.pop(key, None)
                METRICS.unassign_errors_total.inc()
                self.logger.warning("failed to unassign ip %s to %s: %s", obj.ip, key, exc)

    def _unassign(self, request: UnassignIPRequest) -> None:
        if self.cloud_provider is None:
            return
        self.cloud_provider.unassign_ip(request)

    def _resync_record(
        self, ipam: IPAM, key: str, obj: ResyncObj, snapshot: ClusterSnapshot
    ) -> None:
        # Labels of a deleted pod are unknown, so decisions come from its owner.
        statefulset = snapshot.statefulsets.get(obj.app_full_name)
        if statefulset is not None and not is_deployment_key(key):
            self._resync_statefulset_pod(ipam, key, statefulset)
            return

        deployment = snapshot.deployments.get(obj.app_full_name)
        if deployment is not None and is_deployment_key(key):
            self._resync_deployment_pod(ipam, key, deployment)
            return

        if is_deployment_key(key):
            self._resync_deployment_gone(ipam, key, obj.key_info)

    def _resync_statefulset_pod(self, ipam: IPAM, key: str, statefulset: Any) -> None:
        template = _template(statefulset)
        if not has_resource_name(template.spec, self.resource_name):
            release_ip(ipam, key, RELEASE_LABEL_MISMATCH)
            return
        if parse_release_policy(template.metadata) != ReleasePolicy.IMMUTABLE:
            release_ip(ipam, key, RELEASE_IP_MUTABLE)
            return
        try:
            index = parse_pod_index(key)
        except ValueError as exc:
            self.logger.error(
                "invalid pod name %s of ss %s: %s", key, statefulset_name(statefulset), exc
            )
            return
        replicas = statefulset.spec.replicas
        if replicas is not None and replicas < index + 1:
            release_ip(ipam, key, RELEASE_SCALED_DOWN_STATEFULSET)

    def _resync_deployment_pod(self, ipam: IPAM, key: str, deployment: Any) -> None:
        template = _template(deployment)
        if not has_resource_name(template.spec, self.resource_name):
            release_ip(ipam, key, RELEASE_LABEL_MISMATCH)
            return
        policy = parse_release_policy(template.metadata)
        if policy == ReleasePolicy.POD_DELETE:
            release_ip(ipam, key, RELEASE_IP_MUTABLE)
            return

        reserve_key = deployment_pool_prefix(deployment)
        reserved = ipam.by_prefix(reserve_key)
        replicas = deployment.spec.replicas
        if replicas is None:
            replicas = 1
        if replicas < len(reserved) and policy == ReleasePolicy.IMMUTABLE:
            release_ip(ipam, key, RELEASE_SCALED_DOWN_DEPLOYMENT)
        elif reserve_key != key:
            self._rebind(ipam, key, reserve_key)

    def _resync_deployment_gone(self, ipam: IPAM, key: str, info: KeyInfo) -> None:
        fip = ipam.first(key)
        if fip is None:
            return
        if fip.policy != ReleasePolicy.NEVER:
            release_ip(ipam, key, RELEASE_IP_MUTABLE)
            return

        attr = Attr.from_json(fip.attr)
        if attr.pool:
            reserve_key = pool_prefix(attr.pool)
        else:
            reserve_key = deployment_prefix(info.app_name, info.namespace)
        if reserve_key != key:
            self._rebind(ipam, key, reserve_key)

    def _rebind(self, ipam: IPAM, key: str, reserve_key: str) -> None:
        ipam.update_key(key, reserve_key)
        METRICS.rebound_total.labels(ipam=ipam.name()).inc()
        self.logger.info("[%s] reserved ip of %s under %s", ipam.name(), key, reserve_key)

    # ------------------------------------------------------------------
    # Pod IP sync
    # ------------------------------------------------------------------

    def sync_pod_ips_into_store(self) -> None:
        """Record every running pod's annotated IPs into the stores."""
        self.logger.info("sync pod ips into store")
        if not self.store_ready():
            METRICS.resync_skipped_total.labels(phase="sync").inc()
            return
        for pod in list_wanted_pods(self.cache, self.resource_name):
            try:
                self.sync_pod_ip(pod)
            except ConflictingIPError as exc:
                METRICS.sync_errors_total.labels(kind="conflict").inc()
                self.logger.error("%s", exc)
            except (IPAMError, ValueError) as exc:
                METRICS.sync_errors_total.labels(kind="error").inc()
                self.logger.warning("failed to sync ips of pod %s: %s", pod_key(pod), exc)

    def enabled_second_ip(self, pod: Any) -> bool:
        if self.second_ipam is None or not self.second_resource_name:
            return False
        return has_resource_name(pod.spec, self.second_resource_name)

    def sync_pod_ip(self, pod: Any) -> None:
        if getattr(pod.status, "phase", None) != "Running":
            return
        annotations = pod.metadata.annotations or {}
        raw = annotations.get(CNI_ARGS_ANNOTATION)
        if not raw:
            return

        key = pod_key(pod)
        ip_infos = parse_ip_infos(raw)
        if not ip_infos:
            raise IPAMError(f"empty ipinfo for pod {key}")
        self.sync_ip(self.ipam, key, ip_infos[0].ip.ip, pod)

        second_ipam = self.second_ipam
        if second_ipam is not None and self.enabled_second_ip(pod):
            if len(ip_infos) < 2:
                raise IPAMError(f"none second ipinfo for pod {key}")
            self.sync_ip(second_ipam, key, ip_infos[1].ip.ip, pod)

    def sync_ip(self, ipam: IPAM, key: str, ip: ipaddress.IPv4Address, pod: Any) -> None:
        fip = ipam.by_ip(ip)
        if fip is not None and fip.key:
            if fip.key != key:
                raise ConflictingIPError(
                    f"[{ipam.name()}] conflict ip {ip} found for both {key} and {fip.key}"
                )
            return

        ipam.allocate_specific_ip(
            key, ip, parse_release_policy(pod.metadata), get_attr(pod, pod.spec.node_name)
        )
        METRICS.synced_ips_total.labels(ipam=ipam.name()).inc()
        self.logger.info("[%s] updated floatingip %s to key %s", ipam.name(), ip, key)
