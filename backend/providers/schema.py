"""Declarative parameter schemas for capability discovery and validation."""

from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

from pipeline.errors import ValidationError


IOType = Literal["image", "data"]


class ParameterSchema(BaseModel):
    """JSON Schema-like description of a single parameter."""
    type: Literal["string", "number", "integer", "boolean", "object", "array"]
    title: Optional[str] = None
    description: Optional[str] = None
    default: Any = None
    enum: Optional[list[str]] = None
    minimum: Optional[float] = None
    maximum: Optional[float] = None
    properties: Optional[dict[str, "ParameterSchema"]] = None
    items: Optional["ParameterSchema"] = None


class CapabilitySchema(BaseModel):
    """Fields shared by every capability schema."""
    name: str
    description: str = ""
    category: str = "General"
    parameters: dict[str, ParameterSchema] = Field(default_factory=dict)
    required_parameters: list[str] = Field(default_factory=list)
    is_ai: bool = False
    requires_api_key: bool = False
    api_key_env_var: Optional[str] = None

    def defaults(self) -> dict[str, Any]:
        """Parameter defaults, for filling in omitted values."""
        return {
            name: param.default
            for name, param in self.parameters.items()
            if param.default is not None
        }

    def validate_params(self, params: dict[str, Any]) -> None:
        """Shape-level check of params against this schema."""
        validate_params(self, params)


class GeneratorSchema(CapabilitySchema):
    output_type: IOType = "image"
    accepts_reference_images: bool = False


class TransformOperationSchema(CapabilitySchema):
    category: str = "Effects"
    input_type: IOType = "image"
    output_type: IOType = "image"


class SaveProviderSchema(BaseModel):
    name: str
    description: str = ""
    protocols: list[str] = Field(default_factory=list)


class VisionProviderSchema(CapabilitySchema):
    category: str = "AI"
    output_formats: list[Literal["text", "json"]] = Field(default_factory=lambda: ["text"])
    input_type: IOType = "image"
    output_type: IOType = "data"


class TextProviderSchema(CapabilitySchema):
    category: str = "AI"
    output_formats: list[Literal["text", "json"]] = Field(default_factory=lambda: ["text"])
    input_type: IOType = "data"
    output_type: IOType = "data"


_PY_TYPES: dict[str, tuple[type, ...]] = {
    "string": (str,),
    "number": (int, float),
    "integer": (int,),
    "boolean": (bool,),
    "object": (dict,),
    "array": (list, tuple),
}


def _check_value(path: str, schema: ParameterSchema, value: Any) -> str | None:
    expected = _PY_TYPES[schema.type]
    # bool is an int subclass; don't let True pass as a number
    if isinstance(value, bool) and schema.type in ("number", "integer"):
        return f"'{path}' must be a {schema.type}, got boolean"
    if not isinstance(value, expected):
        return f"'{path}' must be a {schema.type}, got {type(value).__name__}"
    if schema.enum is not None and value not in schema.enum:
        return f"'{path}' must be one of {schema.enum}, got {value!r}"
    if schema.type in ("number", "integer"):
        if schema.minimum is not None and value < schema.minimum:
            return f"'{path}' must be >= {schema.minimum}, got {value}"
        if schema.maximum is not None and value > schema.maximum:
            return f"'{path}' must be <= {schema.maximum}, got {value}"
    if schema.type == "object" and schema.properties:
        for key, sub in schema.properties.items():
            if key in value and value[key] is not None:
                problem = _check_value(f"{path}.{key}", sub, value[key])
                if problem:
                    return problem
    if schema.type == "array" and schema.items is not None:
        for i, item in enumerate(value):
            problem = _check_value(f"{path}[{i}]", schema.items, item)
            if problem:
                return problem
    return None


def validate_params(schema: CapabilitySchema, params: dict[str, Any]) -> None:
    """
    Validate params against a capability schema.

    Checks the required set, declared types, enums and numeric bounds.
    Unknown parameters are allowed (providers may accept extras such as
    API keys injected by the caller).

    Raises:
        ValidationError: naming the first offending parameter
    """
    for name in schema.required_parameters:
        if params.get(name) is None:
            raise ValidationError(
                f"Missing required parameter '{name}' for '{schema.name}'",
                operation=schema.name,
            )

    for name, value in params.items():
        param = schema.parameters.get(name)
        if param is None or value is None:
            continue
        problem = _check_value(name, param, value)
        if problem:
            raise ValidationError(
                f"Invalid parameter for '{schema.name}': {problem}",
                operation=schema.name,
            )
