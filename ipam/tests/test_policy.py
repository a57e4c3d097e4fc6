from __future__ import annotations

import ipaddress
import json
from types import SimpleNamespace

import pytest

from ipam.src.keys import POOL_ANNOTATION
from ipam.src.policy import (
    RELEASE_POLICY_ANNOTATION,
    Attr,
    AttrError,
    ReleasePolicy,
    get_attr,
    has_resource_name,
    parse_ip_infos,
    parse_release_policy,
)

RESOURCE = "tke.cloud.tencent.com/eni-ip"


def _metadata(annotations: dict[str, str] | None) -> SimpleNamespace:
    return SimpleNamespace(annotations=annotations)


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("immutable", ReleasePolicy.IMMUTABLE),
        ("Never", ReleasePolicy.NEVER),
        (" never ", ReleasePolicy.NEVER),
        ("bogus", ReleasePolicy.POD_DELETE),
        ("", ReleasePolicy.POD_DELETE),
    ],
)
def test_parse_release_policy(value: str, expected: ReleasePolicy) -> None:
    assert parse_release_policy(_metadata({RELEASE_POLICY_ANNOTATION: value})) is expected


def test_missing_annotations_default_to_pod_delete() -> None:
    assert parse_release_policy(_metadata(None)) is ReleasePolicy.POD_DELETE
    assert parse_release_policy(None) is ReleasePolicy.POD_DELETE


def test_policy_values_are_stable() -> None:
    assert [int(p) for p in ReleasePolicy] == [0, 1, 2]


def _spec(requests: dict[str, str] | None = None, limits: dict[str, str] | None = None):
    return SimpleNamespace(
        containers=[
            SimpleNamespace(resources=None),
            SimpleNamespace(resources=SimpleNamespace(requests=requests, limits=limits)),
        ]
    )


def test_has_resource_name_checks_requests_and_limits() -> None:
    assert has_resource_name(_spec(requests={RESOURCE: "1"}), RESOURCE)
    assert has_resource_name(_spec(limits={RESOURCE: "1"}), RESOURCE)
    assert not has_resource_name(_spec(requests={"cpu": "1"}), RESOURCE)
    assert not has_resource_name(SimpleNamespace(containers=None), RESOURCE)


def test_attr_json_round_trip() -> None:
    attr = Attr(node_name="node-1", pool="pool-a")

    assert json.loads(attr.to_json()) == {"node": "node-1", "pool": "pool-a"}
    assert Attr.from_json(attr.to_json()) == attr


def test_attr_omits_empty_pool() -> None:
    assert Attr(node_name="node-1").to_json() == '{"node":"node-1"}'


@pytest.mark.parametrize("raw", [None, "", "{not json", "[1, 2]"])
def test_attr_from_json_rejects_malformed(raw: str | None) -> None:
    with pytest.raises(AttrError):
        Attr.from_json(raw)


def test_attr_from_json_tolerates_missing_fields() -> None:
    assert Attr.from_json("{}") == Attr()


def test_get_attr_records_node_and_pool() -> None:
    pod = SimpleNamespace(metadata=_metadata({POOL_ANNOTATION: "pool-a"}))

    assert json.loads(get_attr(pod, "node-2")) == {"node": "node-2", "pool": "pool-a"}


def test_parse_ip_infos_preserves_order() -> None:
    annotation = json.dumps(
        {
            "common": {
                "ipinfos": [
                    {"ip": "10.0.0.2/24", "vlan": 3, "gateway": "10.0.0.1"},
                    {"ip": "192.168.1.5/16"},
                ]
            }
        }
    )

    infos = parse_ip_infos(annotation)

    assert [info.ip.ip for info in infos] == [
        ipaddress.IPv4Address("10.0.0.2"),
        ipaddress.IPv4Address("192.168.1.5"),
    ]
    assert infos[0].vlan == 3
    assert infos[0].gateway == "10.0.0.1"
    assert infos[1].vlan == 0


def test_parse_ip_infos_without_common_section() -> None:
    assert parse_ip_infos("{}") == []
    assert parse_ip_infos('{"common": {}}') == []


@pytest.mark.parametrize(
    "annotation",
    [
        "not json",
        '{"common": {"ipinfos": [{"vlan": 1}]}}',
        '{"common": {"ipinfos": [{"ip": "300.1.1.1/24"}]}}',
    ],
)
def test_parse_ip_infos_rejects_malformed(annotation: str) -> None:
    with pytest.raises(ValueError):
        parse_ip_infos(annotation)
