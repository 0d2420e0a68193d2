from enum import Enum
from typing import Any, List

from pydantic import BaseModel, ConfigDict

from pgext.errors import ConfigInvalidError
from pgext.models import PostgresConfig


class ErrorType(str, Enum):
    REQUIRED = "FieldValueRequired"
    INVALID = "FieldValueInvalid"


class FieldError(BaseModel):
    """A single violated rule, modelled after the K8s field errors."""

    model_config = ConfigDict(frozen=True)

    type: ErrorType
    field: str
    bad_value: Any = None
    detail: str = ""

    def __str__(self) -> str:
        if self.type == ErrorType.REQUIRED:
            msg = f"{self.field}: Required value"
        else:
            msg = f"{self.field}: Invalid value: {self.bad_value!r}"
        return f"{msg}: {self.detail}" if self.detail else msg


def required(field: str, detail: str) -> FieldError:
    return FieldError(type=ErrorType.REQUIRED, field=field, detail=detail)


def invalid(field: str, value: Any, detail: str) -> FieldError:
    return FieldError(
        type=ErrorType.INVALID, field=field, bad_value=value, detail=detail
    )


def validate(cfg: PostgresConfig) -> List[FieldError]:
    """Return all rule violations in `cfg`.

    All rules are evaluated so that the user sees every problem at once. An
    empty list means `cfg` is valid.

    """
    spec = cfg.spec
    errs: List[FieldError] = []

    if spec.volumeSize.is_zero():
        errs.append(required("spec.volumeSize", "no volume size specified"))

    if spec.replicas <= 0:
        errs.append(
            invalid("spec.replicas", spec.replicas, "invalid number of replicas")
        )

    if len(spec.users) == 0:
        errs.append(required("spec.users", "no users specified"))

    if len(spec.databases) == 0:
        errs.append(required("spec.databases", "no databases specified"))

    if spec.postgresVersion == "":
        errs.append(required("spec.postgresVersion", "no postgres version specified"))

    return errs


def to_aggregate(errs: List[FieldError]) -> ConfigInvalidError | None:
    """Return `None` if `errs` is empty, otherwise a single aggregate error."""
    return ConfigInvalidError(errs) if len(errs) > 0 else None
