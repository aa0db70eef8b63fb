"""File-backed product variant lookup.

Catalogue variants (a product in a given colour/cut) carry the front and back
template images that generated designs are composited onto.  The catalogue
itself is owned by another part of the business, so the Design Lab only needs
read access by id.  It is kept in a single ``variants.json`` file inside the
data directory::

    {
      "variants": [
        {
          "id": 12,
          "name": "Performance Jersey - Navy",
          "front_template_url": "https://cdn.example.com/jersey-navy-front.png",
          "back_template_url": "https://cdn.example.com/jersey-navy-back.png"
        }
      ]
    }

Loading is intentionally forgiving: a missing, empty or malformed file gives
an empty catalogue, and malformed entries are skipped, so compositing simply
does not run rather than failing the generation.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

from pydantic import ValidationError as PydanticValidationError

from designlab.core.models import Variant

logger = logging.getLogger(__name__)


class VariantCatalog:
    """Read-only variant lookup backed by a JSON file.

    The file is re-read when its modification time changes, so catalogue
    edits are picked up without restarting the server.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._variants: dict[int, Variant] = {}
        self._mtime: float | None = None

    def _reload_if_changed(self) -> None:
        try:
            mtime = self.path.stat().st_mtime
        except FileNotFoundError:
            self._variants = {}
            self._mtime = None
            return

        if mtime == self._mtime:
            return

        try:
            with open(self.path, encoding="utf-8") as handle:
                raw = json.load(handle)
        except (OSError, json.JSONDecodeError):
            logger.warning("Variant catalogue %s could not be read; using empty catalogue.", self.path)
            raw = {}

        entries = raw.get("variants", []) if isinstance(raw, dict) else []
        variants: dict[int, Variant] = {}
        for entry in entries:
            try:
                variant = Variant.model_validate(entry)
            except PydanticValidationError:
                logger.warning("Skipping malformed variant entry: %r", entry)
                continue
            variants[variant.id] = variant

        self._variants = variants
        self._mtime = mtime

    def get(self, variant_id: int) -> Variant | None:
        """Return the variant with *variant_id*, or ``None``."""
        self._reload_if_changed()
        return self._variants.get(variant_id)
