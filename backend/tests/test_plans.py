"""
Unit Tests for PlanCatalog
==========================
"""

import json

import pytest

from coin_ledger.plans import PlanCatalog


class TestPlanCatalog:

    def test_default_catalog(self):
        catalog = PlanCatalog.load("")

        assert len(catalog) == 3
        assert [p.key for p in catalog.all()] == ["BASIC", "STANDARD", "PREMIUM"]
        assert catalog.get(2).price == 250

    def test_lookup_by_name(self):
        catalog = PlanCatalog.load("")

        assert catalog.get_by_name("standard").id == 2
        assert catalog.get_by_name("Premium").id == 3
        assert catalog.get_by_name("GOLD") is None
        assert catalog.get_by_name(None) is None
        assert catalog.get(42) is None

    def test_from_file_legacy_layout(self, tmp_path):
        path = tmp_path / "plans.json"
        path.write_text(json.dumps({
            "PLAN": {
                "free": {"id": 1, "name": "Free", "price": 0, "resources": {"cpu": 50}},
                "pro": {"id": 7, "name": "Pro", "price": 90, "resources": {"cpu": 300, "ram": 4096}}
            }
        }))

        catalog = PlanCatalog.from_file(path)

        assert catalog.get(7).key == "PRO"
        assert catalog.get(7).resources.ram == 4096
        assert catalog.get_by_name("free").resources.disk == 0

    def test_duplicate_ids_rejected(self):
        with pytest.raises(ValueError):
            PlanCatalog.from_dict({
                "A": {"id": 1, "name": "A"},
                "B": {"id": 1, "name": "B"}
            })

    def test_delta(self):
        catalog = PlanCatalog.load("")
        basic, premium = catalog.get(1), catalog.get(3)

        up = catalog.delta(basic, premium)
        down = catalog.delta(premium, basic)

        assert up["cpu"] == 300
        assert up["disk"] == 30720
        assert down == {k: -v for k, v in up.items()}

    def test_delta_from_no_plan(self):
        catalog = PlanCatalog.load("")
        standard = catalog.get(2)

        assert catalog.delta(None, standard) == standard.resources.model_dump()
