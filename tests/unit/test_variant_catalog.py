"""Tests for designlab.core.variant_catalog - JSON-backed variant lookup."""

from __future__ import annotations

import json
import os

from designlab.core.variant_catalog import VariantCatalog


def _write(path, variants):
    path.write_text(json.dumps({"variants": variants}))


class TestVariantCatalog:
    def test_missing_file_is_empty(self, variant_catalog):
        assert variant_catalog.get(1) is None

    def test_lookup_by_id(self, variant_catalog):
        _write(
            variant_catalog.path,
            [
                {"id": 2, "name": "Hoodie", "front_template_url": "https://cdn/h.png"},
                {"id": 1, "name": "Jersey"},
            ],
        )

        assert variant_catalog.get(2).front_template_url == "https://cdn/h.png"
        assert variant_catalog.get(1).name == "Jersey"
        assert variant_catalog.get(1).back_template_url is None
        assert variant_catalog.get(3) is None

    def test_malformed_entries_skipped(self, variant_catalog):
        _write(variant_catalog.path, [{"name": "no id"}, {"id": 3}])
        assert variant_catalog.get(3) is not None

    def test_invalid_json_is_empty(self, variant_catalog):
        variant_catalog.path.write_text("{not json")
        assert variant_catalog.get(1) is None

    def test_reloads_when_file_changes(self, variant_catalog):
        _write(variant_catalog.path, [{"id": 1}])
        assert variant_catalog.get(2) is None

        _write(variant_catalog.path, [{"id": 1}, {"id": 2}])
        stat = variant_catalog.path.stat()
        os.utime(variant_catalog.path, (stat.st_atime, stat.st_mtime + 10))

        assert variant_catalog.get(2) is not None
