"""Computed fields of a concrete test record.

Payload keys follow the camelCase wire format used by the lab clients
(``slump``, ``consistencyClass``, ``specimens``, ``specimenCount``).
Dimensions are in millimetres, weight in grams and force in kN, so
``stress`` comes out in MPa and ``density`` in kg/m3.
"""

from __future__ import annotations

import copy
import math
from typing import Any, Dict, List, Optional

from labrecords.service.errors import BadRequestError

UNDETERMINED_CLASS = "Indéterminé"

# upper slump bound (mm, inclusive) for each consistency class
_SLUMP_CLASSES = ((40, "S1"), (90, "S2"), (150, "S3"), (210, "S4"))

_SQUARE_SECTION_TYPES = ("cube", "prism", "prisme")


def _number(value: Any, field: str = "value") -> Optional[float]:
    """Parse a measurement; blanks give None, non-finite values are rejected."""
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    except OverflowError:
        result = math.inf
    if math.isnan(result):
        return None
    if not math.isfinite(result):
        raise BadRequestError("measurement out of range", detail={"field": field})
    return result


def _finite(value: float, field: str) -> float:
    if not math.isfinite(value):
        raise BadRequestError("measurement out of range", detail={"field": field})
    return value


def consistency_class(slump: float) -> str:
    if slump < 10:
        return UNDETERMINED_CLASS
    for upper, label in _SLUMP_CLASSES:
        if slump <= upper:
            return label
    return "S5"


def section_surface(specimen_type: str, diameter: float) -> float:
    """Loaded surface in mm2: side squared for cubes and prisms, a disc otherwise."""
    kind = (specimen_type or "").lower()
    try:
        if any(token in kind for token in _SQUARE_SECTION_TYPES):
            surface = diameter * diameter
        else:
            surface = math.pi * (diameter / 2) ** 2
    except OverflowError:
        surface = math.inf
    return _finite(surface, "diameter")


def derive_specimen(specimen: Dict[str, Any]) -> Dict[str, Any]:
    derived = dict(specimen)
    diameter = _number(specimen.get("diameter"), "diameter")
    if diameter is None:
        return derived
    surface = section_surface(str(specimen.get("specimenType") or ""), diameter)
    derived["surface"] = surface

    force = _number(specimen.get("force"), "force")
    if force is not None and surface > 0:
        derived["stress"] = _finite(force * 1000 / surface, "force")
    else:
        derived["stress"] = None

    weight = _number(specimen.get("weight"), "weight")
    height = _number(specimen.get("height"), "height")
    if weight is not None and height and height > 0 and surface > 0:
        derived["density"] = _finite(weight / (surface * height) * 1_000_000, "weight")
    else:
        derived["density"] = None
    return derived


def derive_payload(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Return a copy of ``payload`` with the computed fields refreshed.

    Raises:
        BadRequestError: if a specimen is not an object or a measurement
            is not a finite number
    """
    derived = copy.deepcopy(payload)
    slump = _number(derived.get("slump"), "slump")
    if slump is not None:
        derived["consistencyClass"] = consistency_class(slump)

    specimens = derived.get("specimens")
    if isinstance(specimens, list):
        rows: List[Dict[str, Any]] = []
        for index, specimen in enumerate(specimens):
            if not isinstance(specimen, dict):
                raise BadRequestError(
                    "each specimen must be an object", detail={"index": index}
                )
            rows.append(derive_specimen(specimen))
        derived["specimens"] = rows
        derived["specimenCount"] = len(rows)
    return derived


def specimen_count(payload: Dict[str, Any]) -> int:
    specimens = payload.get("specimens")
    if isinstance(specimens, list):
        return len(specimens)
    count = _number(payload.get("specimenCount"), "specimenCount")
    return int(count) if count is not None else 0
