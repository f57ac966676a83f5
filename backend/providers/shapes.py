"""SVG shapes generator.

Draws a single geometric shape on a canvas. Pure and deterministic: the
same params always produce byte-identical SVG.
"""

import math
from typing import Any
from xml.sax.saxutils import quoteattr

from pipeline.errors import GenerationError
from pipeline.payloads import ImageBlob

from .base import BaseGenerator
from .schema import GeneratorSchema, ParameterSchema


SHAPE_TYPES = ["rectangle", "circle", "ellipse", "triangle", "polygon", "star"]
FILL_TYPES = ["solid", "gradient", "none"]


SHAPES_SCHEMA = GeneratorSchema(
    name="shapes",
    description="Generate SVG shapes with customizable fills and strokes",
    category="Basic",
    parameters={
        "shapeType": ParameterSchema(
            type="string", title="Shape", enum=SHAPE_TYPES, default="rectangle",
        ),
        "width": ParameterSchema(
            type="number", title="Width", description="Canvas width in pixels",
            default=1200, minimum=1, maximum=4096,
        ),
        "height": ParameterSchema(
            type="number", title="Height", description="Canvas height in pixels",
            default=630, minimum=1, maximum=4096,
        ),
        "sides": ParameterSchema(
            type="integer", title="Sides", description="Number of sides (polygon only)",
            default=6, minimum=3, maximum=20,
        ),
        "points": ParameterSchema(
            type="integer", title="Points", description="Number of points (star only)",
            default=5, minimum=3, maximum=20,
        ),
        "innerRadius": ParameterSchema(
            type="number", title="Inner Radius", description="Inner radius ratio for star",
            default=0.5, minimum=0.1, maximum=0.9,
        ),
        "cornerRadius": ParameterSchema(
            type="number", title="Corner Radius", description="Corner radius for rectangle",
            default=0, minimum=0,
        ),
        "fillType": ParameterSchema(type="string", title="Fill", enum=FILL_TYPES, default="solid"),
        "fillColor": ParameterSchema(type="string", title="Fill Color", default="#0D9488"),
        "gradientColor1": ParameterSchema(type="string", title="Gradient Start", default="#0D9488"),
        "gradientColor2": ParameterSchema(type="string", title="Gradient End", default="#14B8A6"),
        "gradientAngle": ParameterSchema(
            type="number", title="Gradient Angle", default=135, minimum=0, maximum=360,
        ),
        "strokeColor": ParameterSchema(type="string", title="Stroke Color", default="#000000"),
        "strokeWidth": ParameterSchema(
            type="number", title="Stroke Width", default=0, minimum=0, maximum=100,
        ),
        "rotation": ParameterSchema(
            type="number", title="Rotation", description="Rotation angle in degrees",
            default=0, minimum=0, maximum=360,
        ),
    },
)


def _fmt(value: float) -> str:
    """Format a coordinate without trailing zeros."""
    text = f"{value:.2f}".rstrip("0").rstrip(".")
    return "0" if text == "-0" else text


def _points_attr(points: list[tuple[float, float]]) -> str:
    return " ".join(f"{_fmt(x)},{_fmt(y)}" for x, y in points)


def _regular_polygon(cx: float, cy: float, radius: float, sides: int) -> list[tuple[float, float]]:
    # First vertex points straight up
    return [
        (
            cx + radius * math.cos(2 * math.pi * i / sides - math.pi / 2),
            cy + radius * math.sin(2 * math.pi * i / sides - math.pi / 2),
        )
        for i in range(sides)
    ]


def _star(cx: float, cy: float, outer: float, inner: float, points: int) -> list[tuple[float, float]]:
    vertices = []
    for i in range(points * 2):
        radius = outer if i % 2 == 0 else inner
        angle = math.pi * i / points - math.pi / 2
        vertices.append((cx + radius * math.cos(angle), cy + radius * math.sin(angle)))
    return vertices


class ShapesGenerator(BaseGenerator):
    """Procedural SVG shape generator."""

    name = "shapes"
    schema = SHAPES_SCHEMA

    async def generate(self, params: dict[str, Any]) -> ImageBlob:
        """Render the requested shape as SVG."""
        p = {**self.schema.defaults(), **params}

        shape_type = p["shapeType"]
        if shape_type not in SHAPE_TYPES:
            raise GenerationError(
                f"Unknown shapeType '{shape_type}'. Valid types: {', '.join(SHAPE_TYPES)}",
                provider=self.name,
                retryable=False,
            )

        try:
            width = float(p["width"])
            height = float(p["height"])
        except (TypeError, ValueError) as e:
            raise GenerationError(f"width and height must be numbers: {e}", provider=self.name, cause=e)
        if width <= 0 or height <= 0:
            raise GenerationError("width and height must be positive", provider=self.name)

        defs, fill = self._fill(p)
        stroke_width = float(p["strokeWidth"])
        paint = f"fill={quoteattr(fill)}"
        if stroke_width > 0:
            paint += f" stroke={quoteattr(p['strokeColor'])} stroke-width=\"{_fmt(stroke_width)}\""

        shape = self._shape(shape_type, width, height, stroke_width, p, paint)

        rotation = float(p["rotation"])
        if rotation:
            shape = f'<g transform="rotate({_fmt(rotation)} {_fmt(width / 2)} {_fmt(height / 2)})">{shape}</g>'

        svg = (
            f'<svg xmlns="http://www.w3.org/2000/svg" width="{_fmt(width)}" height="{_fmt(height)}" '
            f'viewBox="0 0 {_fmt(width)} {_fmt(height)}">'
            f"{defs}{shape}</svg>"
        )

        return ImageBlob(
            data=svg.encode("utf-8"),
            mime="image/svg+xml",
            width=int(round(width)),
            height=int(round(height)),
            source=f"svg:{self.name}",
            metadata={"shapeType": shape_type},
        )

    def _fill(self, p: dict[str, Any]) -> tuple[str, str]:
        """Return (defs markup, fill attribute value)."""
        fill_type = p["fillType"]
        if fill_type == "none":
            return "", "none"
        if fill_type == "gradient":
            angle = math.radians(float(p["gradientAngle"]))
            # Map the angle onto the unit square
            x1, y1 = 0.5 - math.cos(angle) / 2, 0.5 - math.sin(angle) / 2
            x2, y2 = 0.5 + math.cos(angle) / 2, 0.5 + math.sin(angle) / 2
            defs = (
                f'<defs><linearGradient id="fill" x1="{_fmt(x1)}" y1="{_fmt(y1)}" '
                f'x2="{_fmt(x2)}" y2="{_fmt(y2)}">'
                f"<stop offset=\"0\" stop-color={quoteattr(p['gradientColor1'])}/>"
                f"<stop offset=\"1\" stop-color={quoteattr(p['gradientColor2'])}/>"
                f"</linearGradient></defs>"
            )
            return defs, "url(#fill)"
        return "", p["fillColor"]

    def _shape(
        self,
        shape_type: str,
        width: float,
        height: float,
        stroke_width: float,
        p: dict[str, Any],
        paint: str,
    ) -> str:
        # Inset by half the stroke so it isn't clipped at the canvas edge
        inset = stroke_width / 2
        cx, cy = width / 2, height / 2
        radius = max(min(width, height) / 2 - inset, 0)

        if shape_type == "rectangle":
            corner = float(p["cornerRadius"])
            rounded = f' rx="{_fmt(corner)}"' if corner else ""
            return (
                f'<rect x="{_fmt(inset)}" y="{_fmt(inset)}" width="{_fmt(width - stroke_width)}" '
                f'height="{_fmt(height - stroke_width)}"{rounded} {paint}/>'
            )
        if shape_type == "circle":
            return f'<circle cx="{_fmt(cx)}" cy="{_fmt(cy)}" r="{_fmt(radius)}" {paint}/>'
        if shape_type == "ellipse":
            return (
                f'<ellipse cx="{_fmt(cx)}" cy="{_fmt(cy)}" rx="{_fmt(cx - inset)}" '
                f'ry="{_fmt(cy - inset)}" {paint}/>'
            )
        if shape_type == "triangle":
            points = [(cx, inset), (width - inset, height - inset), (inset, height - inset)]
            return f'<polygon points="{_points_attr(points)}" {paint}/>'
        if shape_type == "polygon":
            points = _regular_polygon(cx, cy, radius, int(p["sides"]))
            return f'<polygon points="{_points_attr(points)}" {paint}/>'
        # star
        inner = radius * float(p["innerRadius"])
        points = _star(cx, cy, radius, inner, int(p["points"]))
        return f'<polygon points="{_points_attr(points)}" {paint}/>'
