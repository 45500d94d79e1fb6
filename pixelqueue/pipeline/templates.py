"""
Template Layouts

Places the generated product shot on social-media canvases. Layouts A/B/C
differ in where the product, price, handle and badge boxes sit:

- A: product centered, price bottom-left, handle bottom-right, badge top-right
- B: product top, price and handle bottom-center, badge top-left
- C: product inset, price and handle left, badge top-center
"""

from dataclasses import dataclass
from typing import Any, Dict, Iterable, NamedTuple, Optional, Tuple

from PIL import Image, ImageDraw, ImageFilter, ImageFont, ImageOps

from pixelqueue.core.exceptions import InvalidInputError
from pixelqueue.modules.jobs.models import TemplateLayout
from pixelqueue.pipeline.stages import open_image, to_png_bytes

CANVASES: Dict[str, Tuple[int, int]] = {
    "square": (1080, 1080),    # 1:1 feed
    "portrait": (1080, 1350),  # 4:5 feed
    "story": (1080, 1920),     # 9:16 status / story
}


class Placement(NamedTuple):
    x: int
    y: int
    width: int
    height: int


@dataclass(frozen=True)
class TemplatePlacements:
    product: Placement
    price: Placement
    handle: Placement
    badge: Placement


def get_template_placement(layout: str, width: int, height: int) -> TemplatePlacements:
    layout = TemplateLayout(layout)
    is_portrait = height > width
    padding = int(width * 0.05)

    if layout == TemplateLayout.A:
        return TemplatePlacements(
            product=Placement(
                padding,
                int(height * 0.15) if is_portrait else padding,
                width - padding * 2,
                int(height * 0.6) if is_portrait else height - padding * 2 - 100,
            ),
            price=Placement(padding, height - padding - 60, int(width * 0.4), 50),
            handle=Placement(width - padding - int(width * 0.35), height - padding - 40, int(width * 0.35), 30),
            badge=Placement(width - padding - 120, padding, 120, 40),
        )

    if layout == TemplateLayout.B:
        return TemplatePlacements(
            product=Placement(
                padding,
                padding,
                width - padding * 2,
                int(height * 0.65) if is_portrait else int(height * 0.7),
            ),
            price=Placement(int(width * 0.3), height - padding - 100, int(width * 0.4), 50),
            handle=Placement(int(width * 0.3), height - padding - 40, int(width * 0.4), 30),
            badge=Placement(padding, padding, 120, 40),
        )

    return TemplatePlacements(
        product=Placement(
            int(width * 0.1),
            int(height * 0.2) if is_portrait else padding,
            int(width * 0.8),
            int(height * 0.55) if is_portrait else height - padding * 2 - 120,
        ),
        price=Placement(
            padding,
            height - padding - 150 if is_portrait else height - padding - 80,
            int(width * 0.5),
            50,
        ),
        handle=Placement(padding, height - padding - 40, int(width * 0.4), 30),
        badge=Placement(int(width * 0.4), padding, int(width * 0.2), 40),
    )


def format_price(amount: int, currency: str = "FCFA") -> str:
    """
    Group thousands with spaces.

    >>> format_price(12000)
    '12 000 FCFA'
    """
    return f"{amount:,}".replace(",", " ") + f" {currency}"


_TEXT_STYLES = {
    "price": (36, (255, 255, 255, 255)),
    "handle": (20, (255, 255, 255, 255)),
    "badge": (16, (255, 215, 0, 255)),
}


def _draw_text(canvas: Image.Image, text: str, box: Placement, kind: str):
    font_size, color = _TEXT_STYLES[kind]
    font = ImageFont.load_default(size=font_size)
    draw = ImageDraw.Draw(canvas)
    y = box.y + int(box.height * 0.7) - font_size
    draw.text((box.x + 2, y + 2), text, font=font, fill=(0, 0, 0, 128))
    draw.text((box.x, y), text, font=font, fill=color)


def render_canvas(
    product: Image.Image,
    size: Tuple[int, int],
    layout: str,
    price: Optional[int] = None,
    currency: str = "FCFA",
    handle: Optional[str] = None,
    badge: Optional[str] = None
) -> Image.Image:
    width, height = size
    placements = get_template_placement(layout, width, height)

    # Backdrop: the product shot itself, cover-fit and blurred
    backdrop = ImageOps.fit(product.convert("RGB"), size, Image.Resampling.LANCZOS)
    canvas = backdrop.filter(ImageFilter.GaussianBlur(radius=24)).convert("RGBA")

    box = placements.product
    fitted = ImageOps.contain(product.convert("RGBA"), (box.width, box.height), Image.Resampling.LANCZOS)
    left = box.x + (box.width - fitted.width) // 2
    top = box.y + (box.height - fitted.height) // 2
    canvas.alpha_composite(fitted, (left, top))

    if price:
        _draw_text(canvas, format_price(price, currency), placements.price, "price")
    if handle:
        _draw_text(canvas, f"@{handle}", placements.handle, "handle")
    if badge:
        _draw_text(canvas, badge, placements.badge, "badge")

    return canvas.convert("RGB")


def compose_template(
    image_bytes: bytes,
    layout: str = TemplateLayout.A.value,
    canvases: Iterable[str] = ("square", "story"),
    price: Optional[int] = None,
    currency: str = "FCFA",
    handle: Optional[str] = None,
    badge: Optional[str] = None
) -> Tuple[Dict[str, bytes], Dict[str, Any]]:
    """
    Render the image onto every requested canvas.

    Returns:
        Tuple of ({canvas_name: png_bytes}, metadata)
    """
    try:
        layout = TemplateLayout(layout).value
    except ValueError:
        raise InvalidInputError(f"Unknown template layout: {layout}")

    canvases = list(canvases)
    unknown = [name for name in canvases if name not in CANVASES]
    if unknown or not canvases:
        raise InvalidInputError(f"Unknown or empty canvas set: {canvases}")

    product = open_image(image_bytes)
    variants = {}
    for name in canvases:
        rendered = render_canvas(product, CANVASES[name], layout, price, currency, handle, badge)
        variants[name] = to_png_bytes(rendered)

    metadata = {
        "stage": "template",
        "layout": layout,
        "canvases": {name: CANVASES[name] for name in canvases},
    }
    return variants, metadata
