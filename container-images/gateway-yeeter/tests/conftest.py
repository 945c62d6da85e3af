import json

import pytest

import mutate


def make_review(labels=None, annotations=None, kind="Pod", uid="1234", **metadata):
    pod = {"metadata": {"namespace": "test", **metadata}}
    if labels is not None:
        pod["metadata"]["labels"] = labels
    if annotations is not None:
        pod["metadata"]["annotations"] = annotations

    return {
        "apiVersion": "admission.k8s.io/v1",
        "kind": "AdmissionReview",
        "request": {
            "uid": uid,
            "kind": {"group": "", "version": "v1", "kind": kind},
            "operation": "CREATE",
            "object": pod,
        },
    }


def networks_annotation(networks):
    return {mutate.NETWORKS_ANNOTATION: json.dumps(networks)}


@pytest.fixture()
def app():
    app = mutate.create_app(TESTING=True)
    yield app


@pytest.fixture()
def client(app):
    return app.test_client()
