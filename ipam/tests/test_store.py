from __future__ import annotations

import ipaddress
import logging
from datetime import UTC, datetime
from typing import Any
from unittest.mock import MagicMock

import pytest
from kubernetes.client.exceptions import ApiException

from ipam.src.policy import ReleasePolicy
from ipam.src.resync import FloatingIPResyncer
from ipam.src.store import ConflictError, CrdIPAM, IPAMError
from ipam.tests.fakes import FakeCache, make_statefulset

NOW = datetime(2026, 1, 2, 3, 4, 5, tzinfo=UTC)


def _obj(
    ip: str,
    key: str,
    policy: int = 0,
    store: str = "floatingip",
    update_time: str | None = "2026-01-01T00:00:00Z",
) -> dict[str, Any]:
    spec: dict[str, Any] = {"key": key, "attribute": '{"node":"node-1"}', "policy": policy}
    if update_time is not None:
        spec["updateTime"] = update_time
    return {
        "apiVersion": "galaxy.k8s.io/v1alpha1",
        "kind": "FloatingIP",
        "metadata": {"name": ip, "labels": {"ipType": store}, "resourceVersion": "7"},
        "spec": spec,
    }


def _store(api: MagicMock, name: str = "floatingip") -> CrdIPAM:
    return CrdIPAM(api, store_name=name, now_fn=lambda: NOW)


def test_allocate_creates_labelled_object() -> None:
    api = MagicMock()

    _store(api).allocate_specific_ip(
        "ns1_app-0", ipaddress.IPv4Address("10.0.0.5"), ReleasePolicy.IMMUTABLE, '{"node":"n"}'
    )

    kwargs = api.create_cluster_custom_object.call_args.kwargs
    assert kwargs["group"] == "galaxy.k8s.io"
    assert kwargs["plural"] == "floatingips"
    body = kwargs["body"]
    assert body["metadata"] == {"name": "10.0.0.5", "labels": {"ipType": "floatingip"}}
    assert body["spec"] == {
        "key": "ns1_app-0",
        "attribute": '{"node":"n"}',
        "policy": 1,
        "updateTime": "2026-01-02T03:04:05Z",
    }


def test_allocate_taken_ip_raises_conflict() -> None:
    api = MagicMock()
    api.create_cluster_custom_object.side_effect = ApiException(status=409, reason="Conflict")

    with pytest.raises(ConflictError, match="10.0.0.5 is already allocated"):
        _store(api).allocate_specific_ip(
            "ns1_app-0", ipaddress.IPv4Address("10.0.0.5"), ReleasePolicy.POD_DELETE, ""
        )


def test_allocate_api_failure_raises_ipam_error() -> None:
    api = MagicMock()
    api.create_cluster_custom_object.side_effect = ApiException(status=500, reason="Boom")

    with pytest.raises(IPAMError) as excinfo:
        _store(api).allocate_specific_ip(
            "ns1_app-0", ipaddress.IPv4Address("10.0.0.5"), ReleasePolicy.POD_DELETE, ""
        )
    assert not isinstance(excinfo.value, ConflictError)


def test_by_prefix_filters_store_label_and_malformed_objects() -> None:
    api = MagicMock()
    api.list_cluster_custom_object.return_value = {
        "items": [
            _obj("10.0.0.5", "_deployment_ns1_dep1_dep1-a-b", policy=1),
            _obj("10.0.0.6", "ns1_app-0"),
            _obj("10.0.0.7", "_deployment_ns1_dep1_", store="secondip"),
            _obj("not-an-ip", "_deployment_ns1_dep1_dep1-c-d"),
        ]
    }

    records = _store(api).by_prefix("_deployment_ns1_dep1_")

    assert [(r.key, str(r.ip), r.policy) for r in records] == [
        ("_deployment_ns1_dep1_dep1-a-b", "10.0.0.5", ReleasePolicy.IMMUTABLE)
    ]
    assert records[0].update_time == datetime(2026, 1, 1, tzinfo=UTC)
    assert api.list_cluster_custom_object.call_args.kwargs["label_selector"] == (
        "ipType=floatingip"
    )


def test_list_failure_raises_ipam_error() -> None:
    api = MagicMock()
    api.list_cluster_custom_object.side_effect = ApiException(status=503, reason="Unavailable")

    with pytest.raises(IPAMError, match="failed to list floating ips"):
        _store(api).by_prefix("")


def test_first_returns_exact_key_match() -> None:
    api = MagicMock()
    api.list_cluster_custom_object.return_value = {
        "items": [_obj("10.0.0.5", "ns1_app-10"), _obj("10.0.0.6", "ns1_app-1", update_time=None)]
    }

    record = _store(api).first("ns1_app-1")

    assert record is not None
    assert str(record.ip) == "10.0.0.6"
    assert record.update_time is None
    assert _store(api).first("ns1_missing-0") is None


def test_by_ip_missing_object_returns_none() -> None:
    api = MagicMock()
    api.get_cluster_custom_object.side_effect = ApiException(status=404, reason="Not Found")

    assert _store(api).by_ip(ipaddress.IPv4Address("10.0.0.5")) is None


def test_by_ip_ignores_object_of_other_store() -> None:
    api = MagicMock()
    api.get_cluster_custom_object.return_value = _obj("10.0.0.5", "ns1_app-0", store="secondip")

    assert _store(api).by_ip(ipaddress.IPv4Address("10.0.0.5")) is None


def test_release_deletes_owned_object() -> None:
    api = MagicMock()
    api.get_cluster_custom_object.return_value = _obj("10.0.0.5", "ns1_app-0")

    _store(api).release("ns1_app-0", ipaddress.IPv4Address("10.0.0.5"), "deletedAndIPMutablePod")

    api.delete_cluster_custom_object.assert_called_once()
    assert api.delete_cluster_custom_object.call_args.kwargs["name"] == "10.0.0.5"


def test_release_refuses_object_owned_by_another_key() -> None:
    api = MagicMock()
    api.get_cluster_custom_object.return_value = _obj("10.0.0.5", "ns1_other-0")

    with pytest.raises(ConflictError, match="owned by ns1_other-0"):
        _store(api).release("ns1_app-0", ipaddress.IPv4Address("10.0.0.5"), "reason")

    api.delete_cluster_custom_object.assert_not_called()


def test_release_of_already_deleted_object_is_noop() -> None:
    api = MagicMock()
    api.get_cluster_custom_object.return_value = _obj("10.0.0.5", "ns1_app-0")
    api.delete_cluster_custom_object.side_effect = ApiException(status=404, reason="Not Found")

    _store(api).release("ns1_app-0", ipaddress.IPv4Address("10.0.0.5"), "reason")

    api.get_cluster_custom_object.side_effect = ApiException(status=404, reason="Not Found")
    _store(api).release("ns1_app-0", ipaddress.IPv4Address("10.0.0.5"), "reason")
    assert api.delete_cluster_custom_object.call_count == 1


def test_update_key_rewrites_every_matching_object() -> None:
    api = MagicMock()
    api.list_cluster_custom_object.return_value = {
        "items": [
            _obj("10.0.0.5", "_deployment_ns1_dep1_dep1-a-b"),
            _obj("10.0.0.6", "_deployment_ns1_dep1_dep1-c-d"),
        ]
    }

    _store(api).update_key("_deployment_ns1_dep1_dep1-a-b", "_deployment_ns1_dep1_")

    api.replace_cluster_custom_object.assert_called_once()
    kwargs = api.replace_cluster_custom_object.call_args.kwargs
    assert kwargs["name"] == "10.0.0.5"
    assert kwargs["body"]["spec"]["key"] == "_deployment_ns1_dep1_"
    assert kwargs["body"]["spec"]["updateTime"] == "2026-01-02T03:04:05Z"
    assert kwargs["body"]["metadata"]["resourceVersion"] == "7"


def test_update_key_conflict_raises() -> None:
    api = MagicMock()
    api.list_cluster_custom_object.return_value = {"items": [_obj("10.0.0.5", "ns1_app-0")]}
    api.replace_cluster_custom_object.side_effect = ApiException(status=409, reason="Conflict")

    with pytest.raises(ConflictError, match="changed while rebinding"):
        _store(api).update_key("ns1_app-0", "_ippool__pool-a_")


@pytest.mark.parametrize(
    "spec_override",
    [{"updateTime": "garbage"}, {"policy": None}, {"policy": 7}, {"updateTime": 17}],
)
def test_malformed_object_is_skipped(
    spec_override: dict[str, Any], caplog: pytest.LogCaptureFixture
) -> None:
    broken = _obj("10.0.0.6", "ns1_app-1")
    broken["spec"].update(spec_override)
    api = MagicMock()
    api.list_cluster_custom_object.return_value = {
        "items": [_obj("10.0.0.5", "ns1_app-0"), broken]
    }

    with caplog.at_level(logging.WARNING):
        records = _store(api).by_prefix("")

    assert [r.key for r in records] == ["ns1_app-0"]
    assert "ignoring malformed floating ip object 10.0.0.6" in caplog.text


def test_malformed_object_does_not_abort_reconciliation() -> None:
    scaled_down = _obj("10.0.0.5", "ns1_app-1", policy=1)
    broken = _obj("10.0.0.6", "ns1_app-0", update_time="garbage")
    api = MagicMock()
    api.list_cluster_custom_object.return_value = {"items": [scaled_down, broken]}
    api.get_cluster_custom_object.return_value = scaled_down
    resyncer = FloatingIPResyncer(
        FakeCache(statefulsets=[make_statefulset("app", replicas=1)]), _store(api)
    )

    resyncer.reconcile()

    api.delete_cluster_custom_object.assert_called_once()
    assert api.delete_cluster_custom_object.call_args.kwargs["name"] == "10.0.0.5"
