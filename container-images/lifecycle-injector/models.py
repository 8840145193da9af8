import base64
from typing import Any, Literal
from pydantic import (
    BaseModel,
    ConfigDict,
    RootModel,
    model_validator,
    field_validator,
)
from enum import StrEnum


class ApiVersion(StrEnum):
    V1BETA1 = "admission.k8s.io/v1beta1"
    V1 = "admission.k8s.io/v1"


class PatchType(StrEnum):
    JSONPatch = "JSONPatch"


class PatchOp(StrEnum):
    ADD = "add"


# https://kubernetes.io/docs/reference/generated/kubernetes-api/v1.30/#execaction-v1-core
class ExecAction(BaseModel):
    command: list[str]


# https://kubernetes.io/docs/reference/generated/kubernetes-api/v1.30/#lifecyclehandler-v1-core
class LifecycleHandler(BaseModel):
    exec: ExecAction


# https://kubernetes.io/docs/reference/generated/kubernetes-api/v1.30/#lifecycle-v1-core
class Lifecycle(BaseModel):
    preStop: LifecycleHandler


class PatchAction(BaseModel):
    op: PatchOp
    path: str
    value: Lifecycle


# https://jsonpatch.com/
Patch = RootModel[list[PatchAction]]


# https://kubernetes.io/docs/reference/generated/kubernetes-api/v1.30/#status-v1-meta
class AdmissionReviewStatus(BaseModel):
    message: str


# https://kubernetes.io/docs/reference/config-api/apiserver-admission.v1/#admission-k8s-io-v1-AdmissionResponse
class AdmissionResponse(BaseModel):
    allowed: bool
    status: AdmissionReviewStatus | None = None
    uid: str
    patchType: PatchType | None = None
    patch: str | None = None

    @field_validator("patch", mode="before")
    @classmethod
    def validate_patch(cls, val):
        if isinstance(val, Patch):
            val = base64.b64encode(val.model_dump_json().encode()).decode()
        elif isinstance(val, (str, bytes)):
            # Make sure the base64 string contains valid data.
            Patch.model_validate_json(base64.b64decode(val))
        return val

    @model_validator(mode="after")
    def validate_model(self):
        if self.patch and not self.patchType:
            raise ValueError("missing patchType field")
        if self.patchType and not self.patch:
            raise ValueError(f"patchType is {self.patchType} but there is no patch")

        return self


# https://kubernetes.io/docs/reference/config-api/apiserver-admission.v1/#admission-k8s-io-v1-AdmissionRequest
class AdmissionRequest(BaseModel):
    # Fields we don't use are kept so the request can be echoed back. Fields
    # that are null are dropped along with every other null in the response.
    model_config = ConfigDict(extra="allow")

    uid: str
    name: str | None = None
    namespace: str | None = None
    operation: str | None = None
    object: dict[str, Any] | str | None = None


# https://kubernetes.io/docs/reference/config-api/apiserver-admission.v1/#admission-k8s-io-v1-AdmissionReview
class AdmissionReview(BaseModel):
    apiVersion: ApiVersion = ApiVersion.V1BETA1
    kind: Literal["AdmissionReview"] = "AdmissionReview"
    request: AdmissionRequest | None = None
    response: AdmissionResponse | None = None

    @model_validator(mode="after")
    def validate_model(self):
        if not (self.request or self.response):
            raise ValueError("must contain a request or a response")

        return self


class Container(BaseModel):
    name: str = ""
    lifecycle: dict[str, Any] | None = None

    # An explicit null means the zero value, as it does for the API server.
    @field_validator("name", mode="before")
    @classmethod
    def validate_name(cls, val):
        return "" if val is None else val


class PodSpec(BaseModel):
    containers: list[Container] = []

    @field_validator("containers", mode="before")
    @classmethod
    def validate_containers(cls, val):
        return [] if val is None else val


class Pod(BaseModel):
    spec: PodSpec = PodSpec()

    @field_validator("spec", mode="before")
    @classmethod
    def validate_spec(cls, val):
        return {} if val is None else val
