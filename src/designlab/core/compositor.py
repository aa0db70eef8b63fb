"""Preview compositing of generated designs onto product templates.

After a generation succeeds, the orchestrator asks the compositor to place
the new design onto the front/back template images of the project's catalogue
variant, producing a preview of the finished product.

Placement
---------
The design is scaled to fit (preserving aspect ratio) inside a box 60% of
the template's width and 50% of its height.  The box is centred horizontally
and its top edge sits at 20% of the template height.  The result is a PNG
returned as a ``data:image/png;base64,...`` URL.

Embedded designs
----------------
Designs that are still embedded ``data:`` payloads rather than hosted images
are **not** composited: the design URL is returned verbatim as a placeholder
composite.  Only hosted designs (http(s) URLs or local files) are overlaid.

Failure handling
----------------
Fetch and decode failures raise :class:`~designlab.core.errors.CompositingError`.
The orchestrator treats compositing as a soft dependency: it logs these
errors and never fails a generation because of them.
"""

from __future__ import annotations

import base64
import logging
from collections.abc import Callable
from pathlib import Path

import requests
from PIL import Image, ImageOps
from pydantic import BaseModel

from designlab.core.errors import CompositingError
from designlab.core.images import (
    decode_image_bytes,
    encode_png_base64,
    is_data_url,
    to_data_url,
    unwrap_data_url,
)
from designlab.core.models import Variant

logger = logging.getLogger(__name__)

DESIGN_AREA_WIDTH = 0.6
DESIGN_AREA_HEIGHT = 0.5
DESIGN_AREA_TOP = 0.2

ImageFetcher = Callable[[str], bytes]


class CompositeResult(BaseModel):
    composite_front_url: str | None = None
    composite_back_url: str | None = None

    @property
    def is_empty(self) -> bool:
        return self.composite_front_url is None and self.composite_back_url is None


def fetch_image_bytes(url: str, timeout: float = 10.0) -> bytes:
    """Load image bytes from a data URL, an http(s) URL or a local file path.

    Raises:
        CompositingError: If the image cannot be retrieved.
    """
    payload = unwrap_data_url(url)
    if payload is not None:
        try:
            return base64.b64decode(payload, validate=True)
        except ValueError as e:
            raise CompositingError("Embedded image is not valid base64") from e

    if url.startswith(("http://", "https://")):
        try:
            response = requests.get(url, timeout=timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            raise CompositingError(f"Failed to fetch image {url[:50]}: {e}") from e
        return response.content

    try:
        return Path(url).read_bytes()
    except OSError as e:
        raise CompositingError(f"Failed to read image {url[:50]}: {e}") from e


def _load(url: str, fetch: ImageFetcher) -> Image.Image:
    try:
        return decode_image_bytes(fetch(url)).convert("RGBA")
    except ValueError as e:
        raise CompositingError(f"Could not decode image {url[:50]}: {e}") from e


def overlay_design(template: Image.Image, design: Image.Image) -> Image.Image:
    """Place *design* on *template* inside the standard design area."""
    template = template.convert("RGBA")
    area_width = round(template.width * DESIGN_AREA_WIDTH)
    area_height = round(template.height * DESIGN_AREA_HEIGHT)
    area_left = round((template.width - area_width) / 2)
    area_top = round(template.height * DESIGN_AREA_TOP)

    fitted = ImageOps.contain(design.convert("RGBA"), (area_width, area_height))
    left = area_left + (area_width - fitted.width) // 2
    top = area_top + (area_height - fitted.height) // 2

    layer = Image.new("RGBA", template.size, (0, 0, 0, 0))
    layer.paste(fitted, (left, top))
    return Image.alpha_composite(template, layer)


def composite_design_on_template(
    template_url: str | None,
    design_url: str | None,
    *,
    fetch: ImageFetcher = fetch_image_bytes,
) -> str | None:
    """Overlay a design onto a product template.

    Args:
        template_url: Template image location.  ``None`` means the variant
            has no template for this view.
        design_url: Generated design location.
        fetch: Callable returning the bytes of an image location.

    Returns:
        A PNG data URL of the composite, the design URL itself when the
        design is still an embedded payload, or ``None`` when there is no
        template or no design.

    Raises:
        CompositingError: If either image cannot be fetched or decoded.
    """
    if not template_url or not design_url:
        return None

    if is_data_url(design_url):
        return design_url

    template = _load(template_url, fetch)
    design = _load(design_url, fetch)
    composite = overlay_design(template, design)
    return to_data_url(encode_png_base64(composite))


def generate_composites(
    variant: Variant | None,
    front_image_url: str | None,
    back_image_url: str | None,
    *,
    fetch: ImageFetcher = fetch_image_bytes,
) -> CompositeResult:
    """Composite each view that has both a design and a variant template."""
    if variant is None:
        return CompositeResult()

    result = CompositeResult(
        composite_front_url=composite_design_on_template(
            variant.front_template_url, front_image_url, fetch=fetch
        ),
        composite_back_url=composite_design_on_template(
            variant.back_template_url, back_image_url, fetch=fetch
        ),
    )
    logger.debug(
        "Composites for variant %d: front=%s back=%s",
        variant.id,
        result.composite_front_url is not None,
        result.composite_back_url is not None,
    )
    return result
