"""Field value model: provenance-tagged values emitted by the analysis engine.

Every datum in the canonical structure is (ideally) wrapped as::

    {"value": ..., "status": "found" | "inferred" | "missing",
     "confidence": 0.0-1.0, "source": [...], "description": "..."}

Older payloads carry bare values instead, and both shapes coexist in stored
kits. The accessors here accept either shape and never raise: absent data is
always ``None`` or ``[]``. Code that reads canonical data should go through
these accessors rather than indexing ``["value"]`` directly.
"""
from __future__ import annotations

from collections import Counter
from typing import Any, Iterator

FOUND = "found"
INFERRED = "inferred"
MISSING = "missing"
FIELD_STATUSES = (FOUND, INFERRED, MISSING)
PRESENT_STATUSES = (FOUND, INFERRED)


def _is_wrapped(field: Any) -> bool:
    return isinstance(field, dict) and "value" in field


def is_field_value(node: Any) -> bool:
    """True for a dict that looks like a FieldValue (has value and status)."""
    return _is_wrapped(node) and "status" in node


# ---------------------------------------------------------------------------
# Accessors
# ---------------------------------------------------------------------------


def get_value(field: Any) -> Any:
    """Unwrap a FieldValue, or return a bare value unchanged."""
    if _is_wrapped(field):
        return field["value"]
    return field


def get_items(field: Any) -> list:
    """Return the list payload of *field*.

    Handles ``{"value": {"items": [...]}}``, ``{"value": [...]}``,
    a bare ``{"items": [...]}`` container and a bare list.
    """
    if isinstance(field, dict):
        if "value" in field:
            inner = field["value"]
            if isinstance(inner, dict) and isinstance(inner.get("items"), list):
                return inner["items"]
            if isinstance(inner, list):
                return inner
            return []
        items = field.get("items")
        return items if isinstance(items, list) else []
    if isinstance(field, list):
        return field
    return []


def get_metadata(field: Any) -> dict | None:
    if not isinstance(field, dict) or "status" not in field:
        return None
    source = field.get("source")
    if isinstance(source, str):
        source = [source]
    return {
        "status": field.get("status") or MISSING,
        "confidence": _as_confidence(field.get("confidence")),
        "sources": list(source or []),
        "description": field.get("description") or "",
    }


def _as_confidence(raw: Any) -> float:
    try:
        return max(0.0, min(1.0, float(raw)))
    except (TypeError, ValueError):
        return 0.0


def _has_payload(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, (list, tuple)):
        return len(value) > 0
    if isinstance(value, dict):
        if isinstance(value.get("items"), list):
            return len(value["items"]) > 0
        return len(value) > 0
    return True


def is_present(field: Any) -> bool:
    """True iff the status is found/inferred and the payload is non-empty.

    A bare (unwrapped) value carries no status and is judged on payload alone.
    """
    if isinstance(field, dict) and "status" in field:
        if field.get("status") not in PRESENT_STATUSES:
            return False
    return _has_payload(get_value(field))


def get_enriched_value(field: Any) -> dict | None:
    """Value plus metadata. Bare values are reported as found with confidence 1.0."""
    value = get_value(field)
    if value is None:
        return None
    meta = get_metadata(field)
    if meta is None:
        meta = {"status": FOUND, "confidence": 1.0, "sources": [], "description": ""}
    return {"value": value, **meta}


def confidence_label(confidence: float | None) -> str:
    c = confidence or 0.0
    if c >= 0.8:
        return "high"
    if c >= 0.5:
        return "medium"
    return "low"


def extract_values(section: Any, keys: tuple[str, ...] | list[str]) -> dict[str, Any]:
    """Unwrap several fields of one section at once."""
    if not isinstance(section, dict):
        return {k: None for k in keys}
    return {k: get_value(section.get(k)) for k in keys}


# ---------------------------------------------------------------------------
# Constructors
# ---------------------------------------------------------------------------


def make_field(
    value: Any,
    status: str = FOUND,
    confidence: float = 1.0,
    source: list[str] | None = None,
    description: str = "",
) -> dict:
    return {
        "value": value,
        "status": status,
        "confidence": confidence,
        "source": list(source or []),
        "description": description,
    }


def missing_field(description: str = "", source: list[str] | None = None) -> dict:
    return make_field(None, MISSING, 0.0, source, description)


# ---------------------------------------------------------------------------
# Tree walking & quality summary
# ---------------------------------------------------------------------------


def collect_fields(tree: Any, prefix: str = "") -> Iterator[tuple[str, dict]]:
    """Yield ``(dotted_path, field)`` for every FieldValue node under *tree*.

    FieldValue nodes are not descended into.
    """
    if not isinstance(tree, dict):
        return
    for key, node in tree.items():
        path = f"{prefix}.{key}" if prefix else str(key)
        if is_field_value(node):
            yield path, node
        elif isinstance(node, dict):
            yield from collect_fields(node, path)


def data_quality_summary(canonical: dict | None, worst: int = 10) -> dict:
    counts = Counter()
    sources = Counter()
    labels = Counter()
    confidences: list[float] = []
    weak: list[dict] = []

    for path, field in collect_fields(canonical or {}):
        meta = get_metadata(field)
        status = meta["status"]
        counts[status] += 1
        confidences.append(meta["confidence"])
        for src in meta["sources"]:
            sources[src] += 1
        if status == MISSING:
            continue
        labels[confidence_label(meta["confidence"])] += 1
        if meta["confidence"] < 0.5:
            weak.append({"path": path, "status": status, "confidence": meta["confidence"]})

    weak.sort(key=lambda w: (w["confidence"], w["path"]))
    total = sum(counts.values())
    return {
        "total_fields": total,
        "found": counts[FOUND],
        "inferred": counts[INFERRED],
        "missing": counts[MISSING],
        "average_confidence": round(sum(confidences) / total, 3) if total else 0.0,
        "source_breakdown": dict(sources.most_common()),
        "confidence_breakdown": {label: labels[label] for label in ("high", "medium", "low")},
        "low_confidence_fields": weak[:worst],
    }
