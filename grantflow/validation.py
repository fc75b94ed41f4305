"""JSON Schema validation of application field values.

Each form type declares its fields as a Draft 7 JSON Schema. The
FieldValidator checks the values a client sends in a field delta and turns
jsonschema errors into FieldRejection records with readable messages, and
lists required fields that are still missing when an application is about
to enter review.

Only values are checked here. Whether a field exists on the form or whether
the actor may write it is the permission engine's job.
"""

import logging
from typing import Any, Dict, List, Mapping

import jsonschema
from jsonschema import Draft7Validator

from grantflow.errors import FieldRejection
from grantflow.types import FieldRejectionReason

logger = logging.getLogger(__name__)


class FieldValidator:
    """Validates field deltas against a form's JSON Schema.

    Attributes:
        schema: The form's JSON Schema (an object schema with ``properties``)

    Examples:
        >>> schema = {
        ...     'type': 'object',
        ...     'properties': {
        ...         'projectTitle': {'type': 'string', 'minLength': 1},
        ...         'totalBudget': {'type': 'number', 'minimum': 0}
        ...     },
        ...     'required': ['projectTitle']
        ... }
        >>> validator = FieldValidator(schema)
        >>> validator.validate_delta({'totalBudget': -5})[0].field
        'totalBudget'
        >>> validator.missing_required({'totalBudget': 10})
        ['projectTitle']
    """

    def __init__(self, schema: Dict[str, Any]) -> None:
        """Initialize the validator.

        Args:
            schema: A JSON Schema definition (Draft 7 or compatible)

        Raises:
            jsonschema.SchemaError: If the provided schema is invalid
        """
        Draft7Validator.check_schema(schema)
        self.schema = schema
        self.properties: Dict[str, Any] = dict(schema.get("properties", {}))
        self.required: List[str] = list(schema.get("required", []))
        # Partial updates: only supplied properties are checked.
        self._delta_validator = Draft7Validator(
            {"type": "object", "properties": self.properties},
            format_checker=Draft7Validator.FORMAT_CHECKER,
        )

    def validate_delta(self, delta: Mapping[str, Any]) -> List[FieldRejection]:
        """Validate the supplied field values.

        Args:
            delta: Field name to new value

        Returns:
            One INVALID_VALUE rejection per top-level field that failed, in
            the order the fields appear in the delta
        """
        failures: Dict[str, str] = {}
        for error in self._delta_validator.iter_errors(dict(delta)):
            if not error.path:
                continue
            field_name = str(error.path[0])
            # Keep the first message per field; later ones are usually consequences.
            failures.setdefault(field_name, self._describe(error))

        rejections = [
            FieldRejection(
                field=name,
                reason=FieldRejectionReason.INVALID_VALUE,
                message=failures[name],
            )
            for name in delta
            if name in failures
        ]
        if rejections:
            logger.info("Rejected %d invalid field value(s)", len(rejections))
        return rejections

    def missing_required(self, fields: Mapping[str, Any]) -> List[str]:
        """List required fields that are absent, None or blank strings."""
        missing = []
        for name in self.required:
            value = fields.get(name)
            if value is None or (isinstance(value, str) and not value.strip()):
                missing.append(name)
        return missing

    def _describe(self, error: jsonschema.ValidationError) -> str:
        """Translate a jsonschema error into an agent- and human-friendly message.

        Error mapping:
            - 'type' errors -> expected vs received type
            - 'format' errors -> expected format
            - 'enum' or 'const' errors -> allowed values
            - 'minLength'/'maxLength' -> length bounds
            - 'minItems'/'maxItems' -> item count bounds
            - numeric bounds -> violated constraint
            - 'required' inside nested objects -> missing property
        """
        path = ".".join(str(p) for p in error.path)

        if error.validator == "required":
            missing_prop = error.message.split("'")[1] if "'" in error.message else "field"
            return f"Field '{path}.{missing_prop}' is required but was not provided"

        if error.validator == "type":
            received_type = type(error.instance).__name__
            return (
                f"Field '{path}' has invalid type. "
                f"Expected {error.validator_value}, got {received_type}"
            )

        if error.validator == "format":
            return f"Field '{path}' has invalid format. Expected format: {error.validator_value}"

        if error.validator in ("enum", "const"):
            return f"Field '{path}' has invalid value. Must be one of: {error.validator_value}"

        if error.validator == "minLength":
            return f"Field '{path}' is too short. Minimum length: {error.validator_value}"

        if error.validator == "maxLength":
            return f"Field '{path}' is too long. Maximum length: {error.validator_value}"

        if error.validator in ("minItems", "maxItems"):
            return (
                f"Field '{path}' has {len(error.instance)} item(s), "
                f"violating {error.validator}: {error.validator_value}"
            )

        if error.validator in ("minimum", "maximum", "exclusiveMinimum", "exclusiveMaximum"):
            return f"Field '{path}' violates {error.validator} constraint: {error.validator_value}"

        if error.validator == "pattern":
            return f"Field '{path}' does not match required pattern: {error.validator_value}"

        return f"Field '{path}' validation failed: {error.message}"


__all__ = [
    "FieldValidator",
]
