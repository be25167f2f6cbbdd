# ------------------------------------------------------------------------
# File: placement.py
# Location: dealsign/core/placement.py
# Description:
#     Default signature boxes per document type. Boxes use top-left page
#     coordinates (x from the left edge, y down from the top edge) and sit
#     in the upper-right signature area of a US Letter page; the vertical
#     offset follows each form's signature line.
# ------------------------------------------------------------------------

import copy
import math

from dealsign.core.errors import InvalidRequest

DEFAULT_PLACEMENT = {"page": 1, "x": 362, "y": 200, "width": 200, "height": 60}

SIGNATURE_PLACEMENTS = {
    "wholesale_bos": {"y": 200},
    "wholesale_pp_buy": {"y": 250},
    "retail_pp_buy": {"y": 300},
    "vehicle_record_pdf": {"y": 150},
    "vehicle_record": {"y": 150},
    "bill_of_sale": {"y": 220},
    "purchase_agreement": {"y": 560, "height": 50},
    "wholesale_purchase_agreement": {"y": 560, "height": 50},
    "wholesale_purchase_order": {"y": 260},
}


def deep_merge(base: dict, override: dict) -> dict:
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def default_placement(document_type: str) -> dict:
    return deep_merge(DEFAULT_PLACEMENT, SIGNATURE_PLACEMENTS.get(document_type, {}))


def compute_placement(document_type: str, page_width: float, page_height: float, override: dict = None) -> dict:
    """
    Resolve the box for `document_type`, merge any caller override over it
    and clamp the result so it lies fully inside the page.
    """
    box = deep_merge(default_placement(document_type), override)

    try:
        x, y = float(box["x"]), float(box["y"])
        width, height = float(box["width"]), float(box["height"])
        page = int(box.get("page", 1))
    except (TypeError, ValueError, KeyError, OverflowError):
        raise InvalidRequest("Placement override must contain numeric x, y, width and height")
    if not all(math.isfinite(v) for v in (x, y, width, height)):
        raise InvalidRequest("Placement values must be finite numbers")
    if width <= 0 or height <= 0:
        raise InvalidRequest("Placement width and height must be positive")

    width = min(width, page_width)
    height = min(height, page_height)
    x = min(max(x, 0.0), page_width - width)
    y = min(max(y, 0.0), page_height - height)

    return {"page": max(page, 1), "x": x, "y": y, "width": width, "height": height}
