"""
Plan Catalog - Static registry of purchasable plans

Plans are loaded once at startup, either from PLANS_FILE or from the
DEFAULT_PLANS table in config. The file format is the one older dashboards
keep in storage/plans.json:

    {"PLAN": {"BASIC": {"id": 1, "name": "Basic", "price": 0, "resources": {...}}, ...}}

Rules:
- Accounts store the plan KEY (upper-case), e.g. "STANDARD"
- Switching plans applies the per-resource difference between the two
  allotments; it never resets resources to the plan baseline
- An account without a plan counts as holding an all-zero allotment
"""

import json
import logging
from pathlib import Path
from typing import Dict, List, Optional, Union

from .config import DEFAULT_PLANS, PLANS_FILE, RESOURCE_KEYS
from .models import PlanDefinition

logger = logging.getLogger(__name__)


class PlanCatalog:
    """Lookup table of PlanDefinition entries by id and by key."""

    def __init__(self, plans: List[PlanDefinition]):
        self._by_key: Dict[str, PlanDefinition] = {}
        self._by_id: Dict[int, PlanDefinition] = {}
        for plan in plans:
            if plan.key in self._by_key or plan.id in self._by_id:
                raise ValueError(f"Duplicate plan definition: {plan.key} (id={plan.id})")
            self._by_key[plan.key] = plan
            self._by_id[plan.id] = plan

    @classmethod
    def from_dict(cls, raw: dict) -> "PlanCatalog":
        """Build from {"PLAN": {...}} or a bare {KEY: {...}} mapping."""
        table = raw.get("PLAN", raw)
        plans = [
            PlanDefinition(key=key.upper(), **definition)
            for key, definition in table.items()
        ]
        return cls(plans)

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "PlanCatalog":
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
        catalog = cls.from_dict(raw)
        logger.info(f"Loaded {len(catalog)} plans from {path}")
        return catalog

    @classmethod
    def load(cls, path: Optional[str] = None) -> "PlanCatalog":
        """Load from path (or PLANS_FILE); fall back to the built-in table."""
        path = path if path is not None else PLANS_FILE
        if path:
            return cls.from_file(path)
        return cls.from_dict(DEFAULT_PLANS)

    def __len__(self) -> int:
        return len(self._by_key)

    def all(self) -> List[PlanDefinition]:
        return sorted(self._by_key.values(), key=lambda p: p.id)

    def get(self, plan_id: int) -> Optional[PlanDefinition]:
        return self._by_id.get(plan_id)

    def get_by_name(self, name: Optional[str]) -> Optional[PlanDefinition]:
        if not name:
            return None
        plan = self._by_key.get(name.upper())
        if plan:
            return plan
        # Display names ("Standard") resolve too
        for candidate in self._by_key.values():
            if candidate.name.lower() == name.lower():
                return candidate
        return None

    def delta(
        self,
        old_plan: Optional[PlanDefinition],
        new_plan: PlanDefinition
    ) -> Dict[str, int]:
        """Per-resource change in allotment going from old_plan to new_plan."""
        old = old_plan.resources.model_dump() if old_plan else {}
        new = new_plan.resources.model_dump()
        return {r: new.get(r, 0) - old.get(r, 0) for r in RESOURCE_KEYS}
