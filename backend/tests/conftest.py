"""Test fixtures and configuration."""

import asyncio
import sys
from io import BytesIO
from pathlib import Path
from typing import Any

import pytest
from httpx import AsyncClient, ASGITransport
from PIL import Image

# Add backend to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from pipeline.errors import GenerationError, ErrorCategory  # noqa: E402
from pipeline.payloads import DataBlob, ImageBlob, SaveResult  # noqa: E402
from providers.base import (  # noqa: E402
    BaseGenerator,
    BaseSaveProvider,
    BaseTextProvider,
    BaseTransformProvider,
    BaseVisionProvider,
)
from providers.schema import (  # noqa: E402
    GeneratorSchema,
    ParameterSchema,
    SaveProviderSchema,
    TextProviderSchema,
    TransformOperationSchema,
    VisionProviderSchema,
)


def make_png(width: int = 64, height: int = 48, color: str = "red") -> ImageBlob:
    """Build a small PNG payload."""
    buffer = BytesIO()
    Image.new("RGB", (width, height), color=color).save(buffer, format="PNG")
    return ImageBlob(data=buffer.getvalue(), mime="image/png", width=width, height=height, source="test")


def decode(image: ImageBlob) -> Image.Image:
    return Image.open(BytesIO(image.data))


class ConcurrencyGauge:
    """Tracks how many calls overlap."""

    def __init__(self):
        self.active = 0
        self.max_active = 0
        self.calls: list[str] = []

    async def enter(self, label: str, delay: float) -> None:
        self.calls.append(label)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(delay)
        finally:
            self.active -= 1


class SpyGenerator(BaseGenerator):
    """Deterministic SVG generator that counts calls."""

    name = "spy"
    schema = GeneratorSchema(
        name="spy",
        parameters={
            "width": ParameterSchema(type="integer", default=10, minimum=1),
            "height": ParameterSchema(type="integer", default=10, minimum=1),
            "delay": ParameterSchema(type="number", default=0),
        },
    )

    def __init__(self, gauge: ConcurrencyGauge):
        self.gauge = gauge
        self.call_count = 0

    async def generate(self, params: dict[str, Any]) -> ImageBlob:
        self.call_count += 1
        width, height = params.get("width", 10), params.get("height", 10)
        await self.gauge.enter(f"generate:{params.get('label', '')}", params.get("delay", 0))
        if params.get("fail"):
            raise GenerationError("spy generator asked to fail", category=ErrorCategory.UNKNOWN)
        svg = f'<svg xmlns="http://www.w3.org/2000/svg" width="{width}" height="{height}"></svg>'
        return ImageBlob(
            data=svg.encode(),
            mime="image/svg+xml",
            width=width,
            height=height,
            source="svg:spy",
            metadata={"usage": {"model": "spy-1", "units": 1, "unit_type": "images", "cost_usd": 0.01}},
        )


class FakeTransformProvider(BaseTransformProvider):
    """Transform ops for exercising the scheduler."""

    name = "fake"
    operation_schemas = {
        "tag": TransformOperationSchema(
            name="tag",
            parameters={"delay": ParameterSchema(type="number", default=0)},
        ),
        "fail": TransformOperationSchema(name="fail"),
        "timeout": TransformOperationSchema(name="timeout"),
        "describe": TransformOperationSchema(name="describe", output_type="data"),
    }

    def __init__(self, gauge: ConcurrencyGauge):
        self.gauge = gauge
        self.call_count = 0
        self.seen_inputs: list[ImageBlob] = []

    async def transform(self, image: ImageBlob, operation: str, params: dict[str, Any]) -> ImageBlob | DataBlob:
        self.call_count += 1
        self.seen_inputs.append(image)
        await self.gauge.enter(f"{operation}:{params.get('label', '')}", params.get("delay", 0))
        if operation == "fail":
            raise RuntimeError(params.get("message", "transform exploded"))
        if operation == "timeout":
            raise TimeoutError("upstream timed out")
        if operation == "describe":
            return DataBlob.from_json({"mime": image.mime, "size": image.size}, source="transform:fake")
        return ImageBlob(
            data=image.data + f"<!--{params.get('label', 'tag')}-->".encode(),
            mime=image.mime,
            width=image.width,
            height=image.height,
            source="transform:fake:tag",
        )


class MemorySaveProvider(BaseSaveProvider):
    """Keeps saved images in memory."""

    name = "memory"
    aliases = ("mem",)
    schema = SaveProviderSchema(name="memory", protocols=["memory://"])

    def __init__(self):
        self.saved: dict[str, bytes] = {}

    async def save(self, image: ImageBlob, destination: str) -> SaveResult:
        if destination.startswith("fail"):
            raise ConnectionError("storage unreachable")
        self.saved[destination] = image.data
        return SaveResult(provider=self.name, location=f"memory://{destination}", size=image.size, mime=image.mime)


class FakeVisionProvider(BaseVisionProvider):
    name = "eyes"
    schema = VisionProviderSchema(name="eyes")

    async def analyze(self, image: ImageBlob, params: dict[str, Any]) -> DataBlob:
        return DataBlob.from_json(
            {"width": image.width, "height": image.height},
            source="vision:eyes",
            metadata={"usage": {"model": "eyes-1", "units": 1, "unit_type": "requests"}},
        )


class FakeTextProvider(BaseTextProvider):
    name = "echo"
    schema = TextProviderSchema(
        name="echo",
        parameters={"prompt": ParameterSchema(type="string")},
        required_parameters=["prompt"],
    )

    def __init__(self):
        self.last_params: dict[str, Any] | None = None

    async def generate(self, params: dict[str, Any]) -> DataBlob:
        self.last_params = params
        content = params["prompt"]
        if params.get("context"):
            content = f"{content} | {params['context']}"
        return DataBlob(
            data_type="text",
            content=content,
            source="text:echo",
            metadata={"usage": [{"model": "echo-1", "units": 3, "unit_type": "tokens"}]},
        )


@pytest.fixture(scope="session")
def anyio_backend():
    """Use asyncio for async tests."""
    return "asyncio"


@pytest.fixture
def gauge() -> ConcurrencyGauge:
    return ConcurrencyGauge()


@pytest.fixture
def fakes(gauge):
    """The fake providers, exposed for call-count assertions."""
    return {
        "spy": SpyGenerator(gauge),
        "fake": FakeTransformProvider(gauge),
        "memory": MemorySaveProvider(),
        "eyes": FakeVisionProvider(),
        "echo": FakeTextProvider(),
    }


@pytest.fixture
def registry(tmp_path, fakes):
    """Frozen registry with the built-in local providers plus fakes."""
    from providers.filesystem import FilesystemSaveProvider
    from providers.pillow_transform import PillowTransformProvider
    from providers.registry import CapabilityRegistry
    from providers.shapes import ShapesGenerator

    registry = CapabilityRegistry()
    registry.register_generator(ShapesGenerator())
    registry.register_generator(fakes["spy"])
    registry.register_transform_provider(PillowTransformProvider())
    registry.register_transform_provider(fakes["fake"])
    registry.register_save_provider(FilesystemSaveProvider(base_dir=tmp_path))
    registry.register_save_provider(fakes["memory"])
    registry.register_vision_provider(fakes["eyes"])
    registry.register_text_provider(fakes["echo"])
    return registry.freeze()


@pytest.fixture
def executor(registry):
    from pipeline.executor import PipelineExecutor
    return PipelineExecutor(registry)


@pytest.fixture
async def client(registry):
    """Test client whose app runs against the test registry."""
    from app.main import app
    from pipeline.executor import PipelineExecutor

    original = getattr(app.state, "executor", None)
    app.state.executor = PipelineExecutor(registry)
    try:
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            yield ac
    finally:
        app.state.executor = original


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line("markers", "live: tests that hit real AI APIs (cost money)")
    config.addinivalue_line("markers", "slow: tests that take longer to run")
