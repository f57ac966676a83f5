"""
Payload Types.

Values that flow between pipeline steps:
  - ImageBlob: encoded image bytes plus mime type and optional dimensions
  - DataBlob: text or JSON produced by vision/text providers
  - SaveResult: where a save backend put an image
  - UsageEvent: provider-reported cost/quota telemetry

Payloads are frozen. Their metadata (and DataBlob.parsed) is frozen all the
way down: mappings become read-only proxies and lists become tuples, so a
branch holding a payload cannot change what another branch sees.
"""

import base64
import json
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping, Union


MIME_TO_EXT: dict[str, str] = {
    "image/svg+xml": "svg",
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/webp": "webp",
    "image/gif": "gif",
}

EXT_TO_MIME: dict[str, str] = {ext: mime for mime, ext in MIME_TO_EXT.items()}
EXT_TO_MIME["jpeg"] = "image/jpeg"


def freeze(value: Any) -> Any:
    """Deep read-only copy of a JSON-like value."""
    if isinstance(value, Mapping):
        return MappingProxyType({k: freeze(v) for k, v in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(freeze(v) for v in value)
    if isinstance(value, (set, frozenset)):
        return frozenset(value)
    if isinstance(value, bytearray):
        return bytes(value)
    return value


def _freeze(value: Mapping[str, Any] | None) -> Mapping[str, Any]:
    return freeze(value if value is not None else {})


def thaw(value: Any) -> Any:
    """Convert read-only mappings back into plain dicts for serialization."""
    if isinstance(value, Mapping):
        return {k: thaw(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [thaw(v) for v in value]
    return value


@dataclass(frozen=True)
class ImageBlob:
    """An encoded image."""
    data: bytes
    mime: str
    width: int | None = None
    height: int | None = None
    source: str = ""  # provenance, e.g. "svg:shapes" or "transform:pillow:resize"
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not isinstance(self.data, bytes):
            object.__setattr__(self, "data", bytes(self.data))
        object.__setattr__(self, "metadata", _freeze(self.metadata))

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def extension(self) -> str:
        return MIME_TO_EXT.get(self.mime, "bin")

    def to_data_url(self) -> str:
        """Inline-encode the image as a data URL (used for previews)."""
        encoded = base64.b64encode(self.data).decode("ascii")
        return f"data:{self.mime};base64,{encoded}"

    @classmethod
    def from_data_url(cls, url: str, source: str = "input") -> "ImageBlob":
        """Decode a `data:<mime>;base64,<payload>` URL."""
        if not url.startswith("data:") or ";base64," not in url:
            raise ValueError("Expected a base64 data URL")
        header, encoded = url[len("data:"):].split(";base64,", 1)
        return cls(data=base64.b64decode(encoded), mime=header or "image/png", source=source)


@dataclass(frozen=True)
class DataBlob:
    """Text or structured JSON output."""
    data_type: str  # "text" or "json"
    content: str
    parsed: Any = None  # any JSON value; None for text
    source: str = ""
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.data_type not in ("text", "json"):
            raise ValueError(f"DataBlob data_type must be 'text' or 'json', got {self.data_type!r}")
        if self.parsed is not None:
            object.__setattr__(self, "parsed", freeze(self.parsed))
        object.__setattr__(self, "metadata", _freeze(self.metadata))

    @classmethod
    def from_json(cls, value: Any, source: str = "", metadata: Mapping[str, Any] | None = None) -> "DataBlob":
        return cls(
            data_type="json",
            content=json.dumps(thaw(value)),
            parsed=value,
            source=source,
            metadata=metadata or {},
        )

    def to_output(self) -> dict[str, Any]:
        output: dict[str, Any] = {"dataType": self.data_type, "content": self.content}
        if self.parsed is not None:
            output["parsed"] = thaw(self.parsed)
        return output


Payload = Union[ImageBlob, DataBlob]


@dataclass(frozen=True)
class SaveResult:
    """Result from saving an image."""
    provider: str
    location: str
    size: int
    mime: str
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "metadata", _freeze(self.metadata))

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider": self.provider,
            "location": self.location,
            "size": self.size,
            "mime": self.mime,
            "metadata": thaw(self.metadata),
        }


@dataclass
class UsageEvent:
    """Provider-reported usage for external accounting."""
    step_id: str
    kind: str
    provider: str
    operation: str | None = None
    model: str | None = None
    units: float | None = None  # images, tokens, requests... provider decides
    unit_type: str | None = None
    cost_usd: float | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "stepId": self.step_id,
            "kind": self.kind,
            "provider": self.provider,
            "operation": self.operation,
            "model": self.model,
            "units": self.units,
            "unitType": self.unit_type,
            "costUsd": self.cost_usd,
            "metadata": self.metadata,
        }


_USAGE_FIELDS = {"model", "units", "unit_type", "cost_usd"}


def extract_usage(
    metadata: Mapping[str, Any],
    *,
    step_id: str,
    kind: str,
    provider: str,
    operation: str | None = None,
) -> list[UsageEvent]:
    """
    Lift usage reports out of a payload's metadata.

    Providers report usage by setting `metadata["usage"]` to a mapping or a
    list of mappings with any of: model, units, unit_type, cost_usd. Other
    keys are kept in the event's metadata.
    """
    raw = metadata.get("usage")
    if raw is None:
        return []
    reports = [raw] if isinstance(raw, Mapping) else list(raw)

    events = []
    for report in reports:
        report = thaw(report)
        extra = {k: v for k, v in report.items() if k not in _USAGE_FIELDS}
        events.append(UsageEvent(
            step_id=step_id,
            kind=kind,
            provider=provider,
            operation=operation,
            model=report.get("model"),
            units=report.get("units"),
            unit_type=report.get("unit_type"),
            cost_usd=report.get("cost_usd"),
            metadata=extra,
        ))
    return events
