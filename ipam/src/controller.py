from __future__ import annotations

import logging
import os
import random
import threading
import time

from kubernetes.client import ApiException, AppsV1Api, CoreV1Api, CustomObjectsApi

from ipam.src.cloudprovider import CloudProvider, HTTPCloudProvider
from ipam.src.config import IPAMConfig
from ipam.src.metrics import METRICS
from ipam.src.resync import FloatingIPResyncer
from ipam.src.snapshot import ClusterCache
from ipam.src.store import CrdIPAM

_STOP_POLL_SECONDS = 0.5


class FloatingIPController:
    """Drives the resync passes on a fixed interval.

    Each cycle re-lists the cluster cache, records running pods' IPs into
    the stores and then reconciles the stored records. A cycle runs at
    startup, every ``resync_interval_seconds`` afterwards and whenever
    :meth:`trigger` is called.

    A failed cache refresh skips the cycle and is retried with exponential
    backoff and jitter (capped at 30 s, never beyond the resync interval).
    ``401`` / ``403`` responses are configuration errors (RBAC) and stop
    the loop.
    """

    def __init__(
        self,
        cache: ClusterCache,
        resyncer: FloatingIPResyncer,
        resync_interval_seconds: int,
        logger: logging.Logger | None = None,
    ) -> None:
        if resync_interval_seconds < 1:
            raise ValueError("resync_interval_seconds must be >= 1")
        self.cache = cache
        self.resyncer = resyncer
        self.resync_interval_seconds = resync_interval_seconds
        self.logger = logger or logging.getLogger(__name__)
        self.ready = threading.Event()
        self._external_stop = threading.Event()
        self._wake = threading.Event()

    def trigger(self) -> None:
        """Request an immediate resync cycle."""
        self._wake.set()

    def request_stop(self) -> None:
        self._external_stop.set()
        self._wake.set()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def run_once(self) -> None:
        """Refresh the cache and run both passes. Propagates ``ApiException``."""
        self.cache.refresh()
        self.ready.set()
        self.resyncer.sync_pod_ips_into_store()
        self.resyncer.reconcile()

    def _wait(self, stop: threading.Event, timeout: float) -> None:
        """Sleep until the timeout, a trigger or a stop request.

        ``stop`` is owned by the caller and cannot wake ``_wake``, so it is
        polled every ``_STOP_POLL_SECONDS``.
        """
        deadline = time.monotonic() + timeout
        while not self._should_stop(stop):
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return
            if self._wake.wait(timeout=min(remaining, _STOP_POLL_SECONDS)):
                self._wake.clear()
                return

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()

        backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                self.run_once()
                backoff_seconds = 1
                self._wait(stop, self.resync_interval_seconds)
                continue
            except ApiException as exc:
                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API access denied while listing cluster state (status=%s). "
                        "Check RBAC and service account permissions.",
                        exc.status,
                    )
                    self.ready.clear()
                    return
                self.logger.exception("Failed to refresh cluster cache")
                METRICS.cache_refresh_errors_total.inc()
            except Exception:
                self.logger.exception("Unexpected error during resync cycle")
                METRICS.cache_refresh_errors_total.inc()

            jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
            self._wait(stop, min(jittered, self.resync_interval_seconds))
            backoff_seconds = min(backoff_seconds * 2, 30)

        self.ready.clear()


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = os.getenv(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ValueError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {value}")
    return value


def build_controller(
    config: IPAMConfig,
    core_api: CoreV1Api,
    apps_api: AppsV1Api,
    custom_api: CustomObjectsApi,
) -> FloatingIPController:
    """Wire the cache, stores, cloud provider and resyncer from ``config``."""
    cache = ClusterCache(core_api=core_api, apps_api=apps_api)
    ipam = CrdIPAM(custom_api, store_name=config.floatingip_store_name)
    second_ipam = (
        CrdIPAM(custom_api, store_name=config.second_ip_store_name)
        if config.second_ip_enabled
        else None
    )
    cloud_provider: CloudProvider | None = None
    if config.cloud_provider_url:
        cloud_provider = HTTPCloudProvider(
            config.cloud_provider_url,
            timeout_seconds=config.cloud_provider_timeout_seconds,
        )
    else:
        logging.getLogger(__name__).info(
            "CLOUD_PROVIDER_URL is not set; cloud provider unassign calls are disabled"
        )

    resyncer = FloatingIPResyncer(
        cache,
        ipam,
        second_ipam=second_ipam,
        cloud_provider=cloud_provider,
        resource_name=config.resource_name,
        second_resource_name=config.second_resource_name or None,
    )
    return FloatingIPController(
        cache=cache,
        resyncer=resyncer,
        resync_interval_seconds=config.resync_interval_seconds,
    )
