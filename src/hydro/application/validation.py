"""Parameter validation against plan schemas."""

from typing import Any

from jsonschema import Draft7Validator
from jsonschema.exceptions import SchemaError

from hydro.domain.catalog import Plan
from hydro.domain.exceptions import (
    InvalidParametersError,
    ParameterNotFoundError,
    ParameterNotUpdatableError,
)


def validate_parameters(schema: dict[str, Any], parameters: dict[str, Any], purpose: str) -> None:
    """
    Validate parameters against a JSON schema.

    An empty schema accepts anything.

    :raises InvalidParametersError: listing every violation.
    """
    if not schema:
        return
    try:
        Draft7Validator.check_schema(schema)
        validator = Draft7Validator(schema)
        errors = sorted(validator.iter_errors(parameters), key=lambda e: list(e.path))
    except SchemaError as e:
        raise InvalidParametersError(f"{purpose} schema is invalid: {e.message}") from e
    if errors:
        messages = [
            f"{'.'.join(str(p) for p in error.path) or '<root>'}: {error.message}" for error in errors
        ]
        raise InvalidParametersError(
            f"invalid {purpose} parameters: {'; '.join(messages)}",
            {"errors": messages},
        )


def check_update_parameters(plan: Plan, parameters: dict[str, Any]) -> None:
    """
    Check that every parameter named in an update exists and may change on ``plan``.

    Plans that declare no parameter schemas treat parameters as opaque.

    :raises ParameterNotFoundError: for a name neither schema declares.
    :raises ParameterNotUpdatableError: for a name only the create schema declares.
    """
    recognized = plan.recognized_parameters()
    if not recognized:
        return
    updatable = plan.updatable_parameters()
    for name in parameters:
        if name not in recognized:
            raise ParameterNotFoundError(
                f"parameter {name} not found in plan {plan.id}",
                {"parameter": name, "plan_id": plan.id},
            )
        if name not in updatable:
            raise ParameterNotUpdatableError(
                f"parameter {name} is not updatable in plan {plan.id}",
                {"parameter": name, "plan_id": plan.id},
            )


def validate_update_values(plan: Plan, parameters: dict[str, Any]) -> None:
    """Validate only the supplied values; an update may be partial."""
    schema = dict(plan.schemas.update_parameters)
    schema.pop("required", None)
    validate_parameters(schema, parameters, "update")
