"""Local image transforms backed by Pillow.

SVG inputs only support `resize` (the root element's width/height are
rewritten); every other operation needs a raster image.
"""

import asyncio
import re
from io import BytesIO
from typing import Any, Callable

from PIL import Image, ImageFilter, ImageOps, UnidentifiedImageError

from pipeline.errors import ErrorCategory, TransformError
from pipeline.payloads import EXT_TO_MIME, DataBlob, ImageBlob

from .base import BaseTransformProvider
from .schema import ParameterSchema, TransformOperationSchema


SVG_MIME = "image/svg+xml"

# Pillow format name for each mime we can write
_PIL_FORMATS = {
    "image/png": "PNG",
    "image/jpeg": "JPEG",
    "image/webp": "WEBP",
    "image/gif": "GIF",
}


def _op(name: str, description: str, output_type: str = "image", required: list[str] | None = None, **params: ParameterSchema) -> TransformOperationSchema:
    return TransformOperationSchema(
        name=name,
        description=description,
        parameters=params,
        required_parameters=required or [],
        output_type=output_type,
    )


OPERATION_SCHEMAS: dict[str, TransformOperationSchema] = {
    "resize": _op(
        "resize",
        "Resize to a width and/or height (aspect ratio kept when one is omitted)",
        width=ParameterSchema(type="integer", title="Width", minimum=1, maximum=8192),
        height=ParameterSchema(type="integer", title="Height", minimum=1, maximum=8192),
    ),
    "crop": _op(
        "crop",
        "Crop a rectangle out of the image",
        required=["width", "height"],
        left=ParameterSchema(type="integer", default=0, minimum=0),
        top=ParameterSchema(type="integer", default=0, minimum=0),
        width=ParameterSchema(type="integer", minimum=1),
        height=ParameterSchema(type="integer", minimum=1),
    ),
    "rotate": _op(
        "rotate",
        "Rotate counter-clockwise by a number of degrees",
        degrees=ParameterSchema(type="number", default=90),
        expand=ParameterSchema(type="boolean", default=True),
    ),
    "blur": _op(
        "blur",
        "Gaussian blur",
        radius=ParameterSchema(type="number", default=2, minimum=0, maximum=100),
    ),
    "sharpen": _op(
        "sharpen",
        "Unsharp mask",
        radius=ParameterSchema(type="number", default=2, minimum=0),
        percent=ParameterSchema(type="integer", default=150, minimum=0),
    ),
    "grayscale": _op("grayscale", "Convert to grayscale"),
    "convert": _op(
        "convert",
        "Re-encode in another format",
        required=["format"],
        format=ParameterSchema(type="string", enum=["png", "jpeg", "jpg", "webp", "gif"]),
        quality=ParameterSchema(type="integer", default=90, minimum=1, maximum=100),
    ),
    "info": _op(
        "info",
        "Report image dimensions and format",
        output_type="data",
    ),
}


# =============================================================================
# SVG helpers
# =============================================================================

_SVG_ROOT = re.compile(rb"<svg\b[^>]*>", re.IGNORECASE)
_LENGTH = re.compile(r"^\s*([0-9]*\.?[0-9]+)\s*(px)?\s*$")


def _svg_attr(tag: bytes, name: str) -> str | None:
    match = re.search(rb"\s" + name.encode() + rb"\s*=\s*(\"([^\"]*)\"|'([^']*)')", tag)
    if not match:
        return None
    value = match.group(2) if match.group(2) is not None else match.group(3)
    return value.decode("utf-8")


def _set_svg_attr(tag: bytes, name: str, value: str) -> bytes:
    pattern = re.compile(rb"(\s" + name.encode() + rb")\s*=\s*(\"[^\"]*\"|'[^']*')")
    replacement = name.encode() + b'="' + value.encode() + b'"'
    if pattern.search(tag):
        return pattern.sub(lambda m: m.group(1)[:1] + replacement, tag, count=1)
    # Insert right after "<svg"
    return tag[:4] + b" " + replacement + tag[4:]


def _svg_length(value: str | None) -> float | None:
    if value is None:
        return None
    match = _LENGTH.match(value)
    return float(match.group(1)) if match else None


def _fmt(value: float) -> str:
    return f"{value:.2f}".rstrip("0").rstrip(".")


def resize_svg(image: ImageBlob, width: int | None, height: int | None) -> ImageBlob:
    """Rewrite the root width/height. Everything else is left byte-identical."""
    match = _SVG_ROOT.search(image.data)
    if match is None:
        raise TransformError("Input is not a valid SVG document", category=ErrorCategory.VALIDATION)
    tag = match.group(0)

    old_w = image.width or _svg_length(_svg_attr(tag, "width"))
    old_h = image.height or _svg_length(_svg_attr(tag, "height"))

    if width is None and old_w and old_h:
        width = round(height * old_w / old_h)
    if height is None and old_w and old_h:
        height = round(width * old_h / old_w)

    new_tag = tag
    # Without a viewBox the content would be clipped instead of scaled
    if _svg_attr(tag, "viewBox") is None and old_w and old_h:
        new_tag = _set_svg_attr(new_tag, "viewBox", f"0 0 {_fmt(old_w)} {_fmt(old_h)}")
    if width is not None:
        new_tag = _set_svg_attr(new_tag, "width", str(width))
    if height is not None:
        new_tag = _set_svg_attr(new_tag, "height", str(height))

    data = image.data[:match.start()] + new_tag + image.data[match.end():]
    return ImageBlob(
        data=data,
        mime=SVG_MIME,
        width=width,
        height=height,
        source="transform:pillow:resize",
        metadata=image.metadata,
    )


# =============================================================================
# Raster helpers
# =============================================================================

def _open(image: ImageBlob) -> Image.Image:
    try:
        img = Image.open(BytesIO(image.data))
        img.load()
    except (UnidentifiedImageError, OSError) as e:
        raise TransformError(
            f"Cannot decode {image.mime} image: {e}",
            category=ErrorCategory.VALIDATION,
            cause=e,
        )
    return img


def _encode(img: Image.Image, mime: str, quality: int | None = None) -> bytes:
    fmt = _PIL_FORMATS.get(mime, "PNG")
    if fmt == "JPEG" and img.mode not in ("RGB", "L"):
        img = img.convert("RGB")
    buffer = BytesIO()
    kwargs: dict[str, Any] = {}
    if quality is not None and fmt in ("JPEG", "WEBP"):
        kwargs["quality"] = quality
    img.save(buffer, format=fmt, **kwargs)
    return buffer.getvalue()


def _raster_op(image: ImageBlob, operation: str, params: dict[str, Any]) -> ImageBlob | DataBlob:
    img = _open(image)
    mime = image.mime if image.mime in _PIL_FORMATS else "image/png"
    quality = None

    if operation == "info":
        return DataBlob.from_json(
            {"width": img.width, "height": img.height, "mime": image.mime, "mode": img.mode, "size": image.size},
            source="transform:pillow:info",
        )

    if operation == "resize":
        width, height = params.get("width"), params.get("height")
        if width is None:
            width = max(1, round(height * img.width / img.height))
        if height is None:
            height = max(1, round(width * img.height / img.width))
        img = img.resize((int(width), int(height)), Image.Resampling.LANCZOS)
    elif operation == "crop":
        left, top = params.get("left", 0), params.get("top", 0)
        box = (left, top, left + params["width"], top + params["height"])
        if box[2] > img.width or box[3] > img.height:
            raise TransformError(
                f"Crop box {box} exceeds image bounds {img.width}x{img.height}",
                category=ErrorCategory.VALIDATION,
            )
        img = img.crop(box)
    elif operation == "rotate":
        img = img.rotate(params.get("degrees", 90), expand=params.get("expand", True))
    elif operation == "blur":
        img = img.filter(ImageFilter.GaussianBlur(radius=params.get("radius", 2)))
    elif operation == "sharpen":
        img = img.filter(ImageFilter.UnsharpMask(radius=params.get("radius", 2), percent=params.get("percent", 150)))
    elif operation == "grayscale":
        img = ImageOps.grayscale(img)
    elif operation == "convert":
        fmt = str(params["format"]).lower()
        mime = EXT_TO_MIME.get(fmt)
        if mime not in _PIL_FORMATS:
            raise TransformError(f"Unsupported output format '{fmt}'", category=ErrorCategory.VALIDATION)
        quality = params.get("quality", 90)

    return ImageBlob(
        data=_encode(img, mime, quality),
        mime=mime,
        width=img.width,
        height=img.height,
        source=f"transform:pillow:{operation}",
        metadata=image.metadata,
    )


class PillowTransformProvider(BaseTransformProvider):
    """Resize, crop, filter and re-encode images locally."""

    name = "pillow"
    operation_schemas = OPERATION_SCHEMAS

    async def transform(
        self,
        image: ImageBlob,
        operation: str,
        params: dict[str, Any],
    ) -> ImageBlob | DataBlob:
        if operation not in self.operation_schemas:
            raise TransformError(
                f"Unknown operation '{operation}'",
                category=ErrorCategory.NOT_FOUND,
                provider=self.name,
                operation=operation,
            )

        if operation == "resize" and params.get("width") is None and params.get("height") is None:
            raise TransformError(
                "resize needs a width or a height",
                category=ErrorCategory.VALIDATION,
                provider=self.name,
                operation=operation,
            )

        work: Callable[[], ImageBlob | DataBlob]
        if image.mime == SVG_MIME:
            if operation != "resize":
                raise TransformError(
                    f"Operation '{operation}' requires a raster image, got SVG",
                    category=ErrorCategory.VALIDATION,
                    provider=self.name,
                    operation=operation,
                )
            work = lambda: resize_svg(image, params.get("width"), params.get("height"))
        else:
            work = lambda: _raster_op(image, operation, params)

        # Pillow work is CPU-bound; keep it off the event loop
        return await asyncio.to_thread(work)
