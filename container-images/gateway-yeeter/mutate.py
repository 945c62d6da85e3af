import base64
import logging
import ssl
import sys

import pydantic
from pydantic_core import PydanticSerializationError

from flask import Flask, request, jsonify

from models import (
    BaseModel,
    AdmissionRequest,
    AdmissionReview,
    AdmissionResponse,
    AdmissionReviewStatus,
    NetworkSelection,
    Patch,
    PatchAction,
    PatchOp,
    PatchType,
    Pod,
    PodType,
)

from exc import (
    AnnotationParseError,
    ApplicationError,
    DecodeError,
    MissingRequestError,
    SerializationError,
)

LOG = logging.getLogger(__name__)
logging.basicConfig(level=logging.INFO)

NETWORKS_ANNOTATION = "k8s.v1.cni.cncf.io/networks"
FORKLIFT_LABEL = "forklift.app"
APP_LABEL = "app"


class DEFAULTS:
    MAX_CONTENT_LENGTH = 1 << 20
    TLS_CERT = "/etc/server/certs/tls.crt"
    TLS_KEY = "/etc/server/certs/tls.key"
    BIND_ADDRESS = "0.0.0.0"
    PORT = 8443


def jsonresponse():
    """Transforms the response from a view function into a JSON object."""

    def _outer(func):
        def _inner(*args, **kwargs):
            res = func(*args, **kwargs)
            if isinstance(res, BaseModel):
                try:
                    return jsonify(res.model_dump(exclude_none=True))
                except PydanticSerializationError as err:
                    LOG.error("could not encode response: %s", err)
                    raise SerializationError("could not encode response")
            else:
                return jsonify(res)

        return _inner

    return _outer


def json_patch_escape(val):
    return val.replace("~", "~0").replace("/", "~1")


NETWORKS_PATH = f"/metadata/annotations/{json_patch_escape(NETWORKS_ANNOTATION)}"


def dump_json(model, **kwargs) -> str:
    try:
        return model.model_dump_json(**kwargs)
    except PydanticSerializationError as err:
        raise SerializationError(
            f"could not encode {type(model).__name__}: {err}"
        ) from err


def classify_pod(pod: Pod) -> PodType:
    labels = pod.metadata.labels

    if labels.get(FORKLIFT_LABEL) == "virt-v2v":
        return PodType.VIRT_V2V
    if labels.get(APP_LABEL) == "containerized-data-importer":
        return PodType.CDI

    return PodType.NOT_OF_INTEREST


def parse_networks(value: str) -> NetworkSelection:
    """Parse the value of the networks annotation.

    The annotation holds a JSON document encoded as a string, so it has to be
    decoded separately from the pod that carries it."""

    try:
        return NetworkSelection.model_validate_json(value)
    except pydantic.ValidationError as err:
        raise AnnotationParseError(str(err)) from err


def strip_default_routes(networks: NetworkSelection) -> bool:
    """Remove the default-route request from every network in the selection.

    Returns True if at least one network requested a default route. Every
    other field of each element is left alone."""

    modified = False
    for network in networks.root:
        if network.gateway_request:
            LOG.info(
                "removing default-route %s from network %s/%s",
                [str(gw) for gw in network.gateway_request],
                network.namespace or "",
                network.name,
            )
            modified = True
        network.gateway_request = None

    return modified


def allow(uid: str, message: str | None = None) -> AdmissionResponse:
    status = AdmissionReviewStatus(message=message) if message else None
    return AdmissionResponse(allowed=True, uid=uid, status=status)


def review_pod(req: AdmissionRequest) -> AdmissionResponse:
    """Compute the admission response for a pod creation request.

    The webhook never rejects a pod. Problems with the networks annotation are
    logged and the pod is admitted unchanged."""

    if req.object is None:
        raise DecodeError("admission request does not contain an object")

    pod = Pod(**req.object)
    pod_name = pod.metadata.display_name
    uid = req.uid

    pod_type = classify_pod(pod)
    if pod_type is PodType.NOT_OF_INTEREST:
        LOG.warning(
            "reviewing pod %s that is neither virt-v2v nor cdi (uid=%s), "
            "check the webhook object selector; skipping",
            pod_name,
            uid,
        )
        return allow(uid)

    LOG.info("reviewing %s pod %s (uid=%s)", pod_type, pod_name, uid)

    value = pod.metadata.annotations.get(NETWORKS_ANNOTATION)
    if value is None:
        LOG.info(
            "no networks annotation on %s pod %s (uid=%s)", pod_type, pod_name, uid
        )
        return allow(uid)

    LOG.info(
        "found networks annotation on %s pod %s (uid=%s): %s",
        pod_type,
        pod_name,
        uid,
        value,
    )

    try:
        networks = parse_networks(value)
    except AnnotationParseError as err:
        LOG.warning(
            "cannot parse %s on %s pod %s (uid=%s): %s",
            NETWORKS_ANNOTATION,
            pod_type,
            pod_name,
            uid,
            err,
        )
        return allow(uid)

    if not strip_default_routes(networks):
        LOG.info(
            "no default-route found on %s pod %s (uid=%s)", pod_type, pod_name, uid
        )
        return allow(uid)

    try:
        new_value = dump_json(networks, by_alias=True, exclude_none=True)
        LOG.info(
            "new networks annotation for %s pod %s (uid=%s): %s",
            pod_type,
            pod_name,
            uid,
            new_value,
        )

        patch = Patch(
            [
                PatchAction(
                    op=PatchOp.REPLACE,
                    path=NETWORKS_PATH,
                    value=new_value,
                )
            ]
        )
        patch_json = dump_json(patch)
    except SerializationError as err:
        LOG.error("could not encode patch for pod %s (uid=%s): %s", pod_name, uid, err)
        return allow(uid, message=str(err))

    LOG.info("patching %s pod %s (uid=%s): %s", pod_type, pod_name, uid, patch_json)

    return AdmissionResponse(
        uid=uid,
        allowed=True,
        patchType=PatchType.JSONPatch,
        patch=base64.b64encode(patch_json.encode()),
    )


@jsonresponse()
def mutate_pod():
    body = AdmissionReview.model_validate(request.get_json())
    if body.request is None:
        raise MissingRequestError("missing admission request")

    req = body.request

    # The webhook is only registered for pods; anything else gets admitted as-is.
    if not req.kind.is_pod():
        LOG.warning("unsupported kind %s (uid=%s), skipping", req.kind, req.uid)
        return AdmissionReview(response=allow(req.uid))

    return AdmissionReview(response=review_pod(req))


def handle_validationerror(err):
    return str(err), 400, {"content-type": "text/plain"}


def handle_decodeerror(err):
    return str(err), 400, {"content-type": "text/plain"}


def handle_applicationerror(err):
    return str(err), 500, {"content-type": "text/plain"}


def health():
    return "OK", 200, {"content-type": "text/plain"}


def create_app(**config) -> Flask:
    """Use an application factory [1] to create the Flask app.

    This makes it much easier to write tests for the application, since we can
    set up the test environment before instantiating the app. This is difficult
    to do if the app is created at `import` time.

    [1]: https://flask.palletsprojects.com/en/3.0.x/patterns/appfactories/
    """

    app = Flask(__name__)
    app.config.from_object(DEFAULTS)
    app.config.from_prefixed_env("GATEWAY_YEETER")
    if config:
        app.config.update(config)

    app.errorhandler(pydantic.ValidationError)(handle_validationerror)
    app.errorhandler(DecodeError)(handle_decodeerror)
    app.errorhandler(ApplicationError)(handle_applicationerror)
    app.add_url_rule("/healthz", view_func=health)
    app.add_url_rule("/mutate", view_func=mutate_pod, methods=["POST"])

    return app


def load_tls_context(cert, key) -> ssl.SSLContext:
    ctx = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
    ctx.load_cert_chain(cert, key)
    return ctx


def main():
    app = create_app()

    cert, key = app.config["TLS_CERT"], app.config["TLS_KEY"]
    try:
        ssl_context = load_tls_context(cert, key)
    except (OSError, ssl.SSLError) as err:
        LOG.error("unable to load TLS certificate %s and key %s: %s", cert, key, err)
        sys.exit(1)

    LOG.info(
        "starting gateway yeeter on %s:%s",
        app.config["BIND_ADDRESS"],
        app.config["PORT"],
    )
    app.run(
        host=app.config["BIND_ADDRESS"],
        port=app.config["PORT"],
        ssl_context=ssl_context,
        threaded=True,
    )


if __name__ == "__main__":
    main()
