"""Request/response models for the PixelFlow HTTP API."""

import base64
import binascii
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from pipeline.errors import ValidationError
from pipeline.payloads import DataBlob, ImageBlob, Payload
from pipeline.spec_parser import PipelineDefinition, pipeline_from_dict


class InitialVariable(BaseModel):
    """
    A caller-supplied variable.

    Images come as a data URL or as base64 plus a mime type; data comes as
    text or JSON.
    """
    model_config = ConfigDict(populate_by_name=True)

    data_url: Optional[str] = Field(default=None, alias="dataUrl")
    data: Optional[str] = None  # base64
    mime: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    text: Optional[str] = None
    json_value: Any = Field(default=None, alias="json")

    def to_payload(self, name: str) -> Payload:
        source = f"input:{name}"
        try:
            if self.data_url:
                blob = ImageBlob.from_data_url(self.data_url, source=source)
                return ImageBlob(data=blob.data, mime=blob.mime, width=self.width, height=self.height, source=source)
            if self.data:
                return ImageBlob(
                    data=base64.b64decode(self.data, validate=True),
                    mime=self.mime or "image/png",
                    width=self.width,
                    height=self.height,
                    source=source,
                )
        except (ValueError, binascii.Error) as e:
            raise ValidationError(f"Initial variable '{name}' is not valid base64 image data: {e}", cause=e)
        if self.text is not None:
            return DataBlob(data_type="text", content=self.text, source=source)
        if self.json_value is not None:
            return DataBlob.from_json(self.json_value, source=source)
        raise ValidationError(f"Initial variable '{name}' has no content")


class PipelineRequest(BaseModel):
    """A pipeline document as sent over HTTP."""
    name: str = "pipeline"
    steps: list[dict[str, Any]]
    concurrency: Optional[int] = None

    def to_definition(self) -> PipelineDefinition:
        return pipeline_from_dict(self.model_dump(exclude_none=True))


class ExecuteRequest(PipelineRequest):
    """Pipeline plus the variables available before the first step."""
    model_config = ConfigDict(populate_by_name=True)

    initial_variables: dict[str, InitialVariable] = Field(default_factory=dict, alias="initialVariables")

    def to_definition(self) -> PipelineDefinition:
        return pipeline_from_dict(self.model_dump(include={"name", "steps", "concurrency"}, exclude_none=True))

    def decode_variables(self) -> dict[str, Payload]:
        return {name: var.to_payload(name) for name, var in self.initial_variables.items()}


class ExecuteResponse(BaseModel):
    """Synchronous execution result."""
    status: Literal["completed", "error"]
    imageIds: list[str] = Field(default_factory=list)
    previews: dict[str, str] = Field(default_factory=dict)
    dataOutputs: dict[str, dict[str, Any]] = Field(default_factory=dict)
    usageEvents: list[dict[str, Any]] = Field(default_factory=list)
    saves: list[dict[str, Any]] = Field(default_factory=list)
    stepStatuses: dict[str, str] = Field(default_factory=dict)
    error: Optional[str] = None
    errorCode: Optional[str] = None
    errorCategory: Optional[str] = None
    retryable: Optional[bool] = None
    stepId: Optional[str] = None
