import base64
import json

import pytest

import mutate

from exc import AnnotationParseError, DecodeError
from models import AdmissionRequest, Metadata, Pod, PodType

from conftest import networks_annotation


def make_request(labels=None, annotations=None):
    metadata = {"name": "test-pod", "namespace": "test"}
    if labels is not None:
        metadata["labels"] = labels
    if annotations is not None:
        metadata["annotations"] = annotations
    return AdmissionRequest(uid="test", object={"metadata": metadata})


def test_classify_virt_v2v():
    pod = Pod(metadata=Metadata(labels={"forklift.app": "virt-v2v"}))
    assert mutate.classify_pod(pod) is PodType.VIRT_V2V


def test_classify_cdi():
    pod = Pod(metadata=Metadata(labels={"app": "containerized-data-importer"}))
    assert mutate.classify_pod(pod) is PodType.CDI


def test_classify_forklift_label_wins():
    pod = Pod(
        metadata=Metadata(
            labels={"forklift.app": "virt-v2v", "app": "containerized-data-importer"}
        )
    )
    assert mutate.classify_pod(pod) is PodType.VIRT_V2V


@pytest.mark.parametrize(
    "labels",
    [
        {},
        {"app": "other"},
        {"forklift.app": "populator"},
        {"app": "virt-v2v"},
    ],
)
def test_classify_not_of_interest(labels):
    pod = Pod(metadata=Metadata(labels=labels))
    assert mutate.classify_pod(pod) is PodType.NOT_OF_INTEREST


def test_display_name():
    assert Metadata(name="pod", namespace="ns").display_name == "ns/pod"
    assert (
        Metadata(generateName="importer-", namespace="ns").display_name
        == "ns/importer-<generated>"
    )


def test_json_patch_escape():
    assert mutate.json_patch_escape("k8s.v1.cni.cncf.io/networks") == (
        "k8s.v1.cni.cncf.io~1networks"
    )
    assert mutate.json_patch_escape("a~b/c") == "a~0b~1c"


@pytest.mark.parametrize(
    "value",
    [
        "[{not json",
        '{"name": "mtv-transfer"}',
        '[{"name": "mtv-transfer", "default-route": ["not-an-address"]}]',
        "mtv-transfer",
    ],
)
def test_parse_networks_invalid(value):
    with pytest.raises(AnnotationParseError):
        mutate.parse_networks(value)


def test_strip_default_routes():
    networks = mutate.parse_networks(
        json.dumps(
            [
                {"name": "a", "namespace": "ns", "default-route": ["192.168.0.1"]},
                {"name": "b", "default-route": []},
                {"name": "c", "cni-args": {"foo": "bar"}},
            ]
        )
    )
    assert mutate.strip_default_routes(networks)
    assert all(network.gateway_request is None for network in networks.root)
    assert json.loads(
        networks.model_dump_json(by_alias=True, exclude_none=True)
    ) == [
        {"name": "a", "namespace": "ns"},
        {"name": "b"},
        {"name": "c", "cni-args": {"foo": "bar"}},
    ]


def test_strip_default_routes_no_gateway():
    networks = mutate.parse_networks(
        '[{"name": "a", "namespace": "ns"}, {"name": "b", "default-route": []}]'
    )
    assert not mutate.strip_default_routes(networks)


def test_review_pod_patch():
    req = make_request(
        labels={"forklift.app": "virt-v2v"},
        annotations=networks_annotation(
            [
                {
                    "name": "mtv-transfer",
                    "namespace": "default",
                    "default-route": ["192.168.0.1"],
                }
            ]
        ),
    )
    res = mutate.review_pod(req)

    assert res.allowed
    assert res.uid == "test"
    assert res.patchType == "JSONPatch"
    patch = json.loads(base64.b64decode(res.patch))
    assert patch == [
        {
            "op": "replace",
            "path": "/metadata/annotations/k8s.v1.cni.cncf.io~1networks",
            "value": '[{"name":"mtv-transfer","namespace":"default"}]',
        }
    ]


def test_review_pod_not_of_interest_ignores_annotation():
    req = make_request(
        labels={"app": "other"},
        annotations={mutate.NETWORKS_ANNOTATION: "[{not json"},
    )
    res = mutate.review_pod(req)
    assert res.allowed
    assert res.uid == "test"
    assert res.patch is None
    assert res.patchType is None


def test_review_pod_other_annotations_ignored():
    req = make_request(
        labels={"app": "containerized-data-importer"},
        annotations={"example.com/networks": "[]"},
    )
    res = mutate.review_pod(req)
    assert res.allowed
    assert res.patch is None


def test_review_pod_malformed_annotation():
    req = make_request(
        labels={"forklift.app": "virt-v2v"},
        annotations={mutate.NETWORKS_ANNOTATION: "not json"},
    )
    res = mutate.review_pod(req)
    assert res.allowed
    assert res.patch is None
    assert res.status is None


def test_review_pod_missing_object():
    with pytest.raises(DecodeError):
        mutate.review_pod(AdmissionRequest(uid="test"))
