"""Format reconciler: one canonical structure from any historical result shape.

The engine's completed-job payload has come in three shapes over time:

* ``{"comprehensive": {...}}`` - the canonical structure, used verbatim.
* ``{"brand_kit": {...}}`` where the kit is already FieldValue-wrapped
  (same shape as canonical, different container name).
* ``{"brand_kit": {...}}`` with legacy flat fields, lifted by
  ``legacy.transform_legacy``.

Detection is an ordered decision table; the first matching row wins.
All paths deep-copy their input so the canonical output never aliases the
raw payload, and none of them read the clock.
"""
from __future__ import annotations

import copy
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

from brandintel.errors import DataUnavailable
from brandintel.fields import get_value
from brandintel.legacy import transform_legacy

log = logging.getLogger(__name__)

SOURCE_AUTO = "auto"
SOURCE_AUTO_FALLBACK = "auto_fallback"
SOURCE_REANALYZED = "reanalyzed"
SOURCE_MANUAL = "manual"

FORMAT_VERSION = "2.0"

# Deep fields whose wrapped form marks a brand_kit as already canonical.
WRAPPED_PROBES: tuple[tuple[str, str], ...] = (
    ("verbal_identity", "elevator_pitch"),
    ("audience_positioning", "primary_icp"),
    ("proof_trust", "testimonials"),
)


class ResultShape(str, Enum):
    COMPREHENSIVE = "comprehensive"
    WRAPPED_BRAND_KIT = "wrapped_brand_kit"
    LEGACY = "legacy"


@dataclass
class Reconciled:
    canonical: dict
    raw: dict
    shape: ResultShape
    source: str
    generated_at: str | None = None


# ---------------------------------------------------------------------------
# Shape predicates
# ---------------------------------------------------------------------------


def _section(result: dict, key: str) -> dict | None:
    value = result.get(key)
    return value if isinstance(value, dict) and value else None


def has_wrapped_fields(kit: Any) -> bool:
    if not isinstance(kit, dict):
        return False
    for section, field in WRAPPED_PROBES:
        node = kit.get(section)
        if isinstance(node, dict):
            node = node.get(field)
            if isinstance(node, dict) and "value" in node:
                return True
    return False


def _is_comprehensive(result: dict) -> bool:
    return _section(result, "comprehensive") is not None


def _is_wrapped_kit(result: dict) -> bool:
    return has_wrapped_fields(_section(result, "brand_kit"))


def _is_legacy_kit(result: dict) -> bool:
    return _section(result, "brand_kit") is not None


def _from_comprehensive(result: dict) -> dict:
    return copy.deepcopy(result["comprehensive"])


def _from_wrapped_kit(result: dict) -> dict:
    return copy.deepcopy(result["brand_kit"])


def _from_legacy(result: dict) -> dict:
    return transform_legacy(copy.deepcopy(result))


_DECISION_TABLE: list[tuple[ResultShape, Callable[[dict], bool], Callable[[dict], dict], str]] = [
    (ResultShape.COMPREHENSIVE, _is_comprehensive, _from_comprehensive, SOURCE_AUTO),
    (ResultShape.WRAPPED_BRAND_KIT, _is_wrapped_kit, _from_wrapped_kit, SOURCE_AUTO),
    (ResultShape.LEGACY, _is_legacy_kit, _from_legacy, SOURCE_AUTO_FALLBACK),
]


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def detect_shape(result: Any) -> ResultShape | None:
    if not isinstance(result, dict):
        return None
    for shape, matches, _build, _source in _DECISION_TABLE:
        if matches(result):
            return shape
    return None


def raw_payload(result: dict) -> dict:
    """The historical v2 payload kept next to the canonical structure."""
    kit = result.get("brand_kit") if isinstance(result.get("brand_kit"), dict) else {}
    return copy.deepcopy({
        "brand_kit": kit,
        "brand_scores": result.get("brand_scores") or {},
        "brand_roadmap": result.get("brand_roadmap") or {},
        "generated_at": kit.get("generated_at"),
    })


def _generated_at(result: dict, canonical: dict) -> str | None:
    kit = result.get("brand_kit")
    if isinstance(kit, dict) and kit.get("generated_at"):
        return kit["generated_at"]
    meta = canonical.get("meta") if isinstance(canonical, dict) else None
    if isinstance(meta, dict):
        stamp = get_value(meta.get("audit_timestamp"))
        if isinstance(stamp, str) and stamp:
            return stamp
    return None


def reconcile(result: Any) -> Reconciled:
    """Reconcile a completed job's ``result`` into the canonical structure.

    Raises ``DataUnavailable`` when neither ``comprehensive`` nor ``brand_kit``
    is present.
    """
    if isinstance(result, dict):
        for shape, matches, build, source in _DECISION_TABLE:
            if matches(result):
                canonical = build(result)
                log.info("Reconciled result as %s (%d sections)", shape.value, len(canonical))
                return Reconciled(
                    canonical=canonical,
                    raw=raw_payload(result),
                    shape=shape,
                    source=source,
                    generated_at=_generated_at(result, canonical),
                )
    raise DataUnavailable("No brand kit data available in result")


def reconcile_snapshot(kit: Any, source: str = SOURCE_REANALYZED) -> Reconciled:
    """Reconcile a locally stored kit snapshot when the engine can't be reached.

    A snapshot that already has canonical sections is used as-is; anything
    else goes through the legacy transform.
    """
    if not isinstance(kit, dict) or not kit:
        raise DataUnavailable("No stored brand kit to re-analyze")
    if ("meta" in kit and "visual_identity" in kit) or has_wrapped_fields(kit):
        canonical = copy.deepcopy(kit)
        shape = ResultShape.WRAPPED_BRAND_KIT
    else:
        canonical = transform_legacy({"brand_kit": copy.deepcopy(kit)})
        shape = ResultShape.LEGACY
    return Reconciled(
        canonical=canonical,
        raw=raw_payload({"brand_kit": kit}),
        shape=shape,
        source=source,
        generated_at=_generated_at({"brand_kit": kit}, canonical),
    )
