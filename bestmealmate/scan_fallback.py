"""Demo scan results returned when the vision model is unavailable.

The food scanner is part of the onboarding demo, so an AI outage degrades to a
fixed, realistic fridge scan instead of an error screen. The response is
flagged with ``demo: true`` so the client can tell the two apart.
"""

from __future__ import annotations

import copy
import logging
from typing import Any, Dict, List

from bestmealmate.food_scan import summarise_nutrition

logger = logging.getLogger(__name__)


_DEMO_ITEMS: List[Dict[str, Any]] = [
  {
    "name": "Organic Whole Milk",
    "quantity": "1 gallon",
    "category": "dairy",
    "confidence": 0.95,
    "calories": 150,
    "protein": 8,
    "carbs": 12,
    "fat": 8,
    "expiryDays": 14,
    "freshness": "fresh",
  },
  {
    "name": "Large Brown Eggs",
    "quantity": "1 dozen",
    "category": "dairy",
    "confidence": 0.92,
    "calories": 70,
    "protein": 6,
    "carbs": 0,
    "fat": 5,
    "expiryDays": 21,
    "freshness": "fresh",
  },
  {
    "name": "Grass-Fed Butter",
    "quantity": "2 sticks",
    "category": "dairy",
    "confidence": 0.88,
    "calories": 100,
    "protein": 0,
    "carbs": 0,
    "fat": 11,
    "expiryDays": 30,
    "freshness": "good",
  },
  {
    "name": "Fresh Orange Juice",
    "quantity": "1/2 gallon",
    "category": "beverages",
    "confidence": 0.85,
    "calories": 110,
    "protein": 2,
    "carbs": 26,
    "fat": 0,
    "expiryDays": 7,
    "freshness": "fresh",
  },
  {
    "name": "Sharp Cheddar Cheese",
    "quantity": "8 oz",
    "category": "dairy",
    "confidence": 0.82,
    "calories": 110,
    "protein": 7,
    "carbs": 1,
    "fat": 9,
    "expiryDays": 21,
    "freshness": "good",
  },
]


def demo_scan_result() -> Dict[str, Any]:
  """Return the canned camera scan used when the AI call fails."""
  logger.info("Vision model unavailable; returning demo scan result")
  items = copy.deepcopy(_DEMO_ITEMS)
  return {
    "items": items,
    "scanType": "camera",
    "totalItems": len(items),
    "nutritionSummary": summarise_nutrition(items),
    "demo": True,
  }


__all__ = ["demo_scan_result"]
