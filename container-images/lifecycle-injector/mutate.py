import json
import logging
import pydantic
import yaml

from flask import Flask, request, jsonify, current_app
from pydantic_core import PydanticSerializationError
from werkzeug.exceptions import ClientDisconnected

from models import (
    BaseModel,
    AdmissionReview,
    AdmissionResponse,
    AdmissionReviewStatus,
    ExecAction,
    Lifecycle,
    LifecycleHandler,
    Patch,
    PatchAction,
    PatchOp,
    PatchType,
    Pod,
)

from exc import ApplicationError, DecodeError, PatchError

LOG = logging.getLogger(__name__)
logging.basicConfig(level=logging.INFO)

METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]


class DEFAULTS:
    CONTAINER_NAME = "linkerd-proxy"
    SLEEP_SECONDS = 5
    HOST = "0.0.0.0"
    PORT = 443
    TLS_CERT = "server.crt"
    TLS_KEY = "server.key"


def jsonresponse():
    """Transforms the response from a view function into a JSON object.

    A view that returns None produces an empty 200 response."""

    def _outer(func):
        def _inner(*args, **kwargs):
            res = func(*args, **kwargs)
            if res is None:
                return "", 200

            try:
                if isinstance(res, BaseModel):
                    return jsonify(res.model_dump(exclude_none=True))
                else:
                    return jsonify(res)
            except (TypeError, ValueError) as err:
                LOG.warning("Error marshaling response: %s", err)
                raise ApplicationError(str(err)) from err

        return _inner

    return _outer


def load_document(data):
    """Parse a JSON or YAML document."""

    try:
        return json.loads(data)
    except RecursionError as err:
        raise DecodeError(f"unable to parse payload: {err}") from err
    except ValueError:
        LOG.debug("payload is not JSON, trying YAML")

    try:
        return yaml.safe_load(data)
    except (yaml.YAMLError, RecursionError) as err:
        raise DecodeError(f"unable to parse payload: {err}") from err


def salvage_uid(doc):
    req = doc.get("request")
    uid = req.get("uid") if isinstance(req, dict) else None
    return uid if isinstance(uid, str) else ""


def decode_review(data) -> AdmissionReview:
    doc = load_document(data)
    if not isinstance(doc, dict):
        raise DecodeError("admission review must be an object")

    try:
        review = AdmissionReview.model_validate(doc)
    except pydantic.ValidationError as err:
        raise DecodeError(str(err), uid=salvage_uid(doc)) from err

    if review.request is None:
        raise DecodeError("admission review contains no request")

    return review


def decode_pod(obj) -> Pod:
    """Accepts the embedded object either already parsed or as raw JSON/YAML."""

    if obj is None:
        raise DecodeError("admission request contains no object")

    if isinstance(obj, (str, bytes)):
        obj = load_document(obj)

    if not isinstance(obj, dict):
        raise DecodeError("admission request object must be a pod")

    try:
        return Pod.model_validate(obj)
    except pydantic.ValidationError as err:
        raise DecodeError(str(err)) from err


def lifecycle_hook(sleep_seconds) -> Lifecycle:
    return Lifecycle(
        preStop=LifecycleHandler(
            exec=ExecAction(command=["/bin/bash", "-c", f"sleep {sleep_seconds}"])
        )
    )


def find_targets(pod, container_name):
    targets = []
    for i, container in enumerate(pod.spec.containers):
        LOG.debug("container.name: %s", container.name)

        # idempotency: an existing hook is never replaced
        if container.lifecycle is not None:
            continue

        if container.name == container_name:
            targets.append(i)

    LOG.debug("selected containers: %s", targets)
    return targets


def get_patch(pod, container_name, sleep_seconds) -> Patch | None:
    targets = find_targets(pod, container_name)

    # No patch at all, rather than an empty one.
    if not targets:
        return None

    return Patch(
        [
            PatchAction(
                op=PatchOp.ADD,
                path=f"/spec/containers/{i}/lifecycle",
                value=lifecycle_hook(sleep_seconds),
            )
            for i in targets
        ]
    )


def deny(uid, message) -> AdmissionResponse:
    return AdmissionResponse(
        uid=uid,
        allowed=False,
        status=AdmissionReviewStatus(message=message),
    )


def inject(req, config) -> AdmissionResponse:
    pod = decode_pod(req.object)
    patch = get_patch(pod, config["CONTAINER_NAME"], config["SLEEP_SECONDS"])

    if patch is None:
        return AdmissionResponse(uid=req.uid, allowed=True)

    try:
        LOG.info("patch: %s", patch.model_dump_json())
        return AdmissionResponse(
            uid=req.uid,
            allowed=True,
            patchType=PatchType.JSONPatch,
            patch=patch,
        )
    except (pydantic.ValidationError, PydanticSerializationError) as err:
        raise PatchError(f"failed to serialize patch: {err}") from err


def process_review(data, config) -> AdmissionReview:
    try:
        review = decode_review(data)
    except DecodeError as err:
        LOG.error("failed to decode data. Reason: %s", err)
        return AdmissionReview(response=deny(err.uid, str(err)))

    LOG.info("received admission review request %s", review.request.uid)

    try:
        review.response = inject(review.request, config)
    except (DecodeError, PatchError) as err:
        LOG.error("failed to inject hooks. Reason: %s", err)
        review.response = deny(review.request.uid, str(err))

    return review


@jsonresponse()
def mutate_pod(path=""):
    try:
        data = request.get_data()
    except (ClientDisconnected, OSError) as err:
        LOG.warning("Error reading request: %s", err)
        raise ApplicationError(str(err)) from err

    if not data:
        LOG.warning("received empty payload")
        return None

    return process_review(data, current_app.config)


def handle_applicationerror(err):
    return str(err), 500, {"content-type": "text/plain"}


def create_app(**config) -> Flask:
    """Use an application factory [1] to create the Flask app.

    Settings come from DEFAULTS, then from LIFECYCLE_INJECTOR_* environment
    variables, then from keyword arguments.

    [1]: https://flask.palletsprojects.com/en/3.0.x/patterns/appfactories/
    """

    app = Flask(__name__)
    app.config.from_object(DEFAULTS)
    app.config.from_prefixed_env("LIFECYCLE_INJECTOR")
    if config:
        app.config.update(config)

    if not app.config.get("CONTAINER_NAME"):
        LOG.error("Missing container name configuration")
        exit(1)

    sleep_seconds = app.config.get("SLEEP_SECONDS")
    if (
        isinstance(sleep_seconds, bool)
        or not isinstance(sleep_seconds, int)
        or sleep_seconds < 0
    ):
        LOG.error("Invalid sleep duration: %r", sleep_seconds)
        exit(1)

    app.errorhandler(ApplicationError)(handle_applicationerror)
    app.add_url_rule(
        "/", endpoint="mutate_pod", view_func=mutate_pod, methods=METHODS
    )
    app.add_url_rule(
        "/<path:path>",
        endpoint="mutate_pod",
        view_func=mutate_pod,
        methods=METHODS,
    )

    return app


def serve(app):
    LOG.info(
        "Starting lifecycle injector on %s:%s", app.config["HOST"], app.config["PORT"]
    )
    app.run(
        host=app.config["HOST"],
        port=app.config["PORT"],
        ssl_context=(app.config["TLS_CERT"], app.config["TLS_KEY"]),
        threaded=True,
    )


def main():
    app = create_app()

    try:
        serve(app)
    except OSError as err:
        LOG.error("server failed: %s", err)
        exit(1)


if __name__ == "__main__":
    main()
