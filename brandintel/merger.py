"""Module patch merger: replace one top-level section of a canonical structure."""
from __future__ import annotations

import logging
import re
from typing import Any

from brandintel.errors import ValidationError

log = logging.getLogger(__name__)

MODULE_ID_RE = re.compile(r"^[a-z_]+$")

# Not enforced: persona-specific module catalogs extend this list.
COMMON_MODULES = (
    "visual_identity", "verbal_identity", "audience_positioning", "proof_trust",
    "seo_identity", "content_assets", "product_offers", "external_presence",
)


def validate_module_id(module_id: Any) -> str:
    if not isinstance(module_id, str) or not MODULE_ID_RE.match(module_id):
        raise ValidationError(
            "Invalid module ID format. Must contain only lowercase letters and underscores."
        )
    if module_id not in COMMON_MODULES:
        log.info("Module %s is not a common module; it may be persona-specific", module_id)
    return module_id


def merge_module_patch(existing: dict | None, module_id: str, patch: Any) -> dict:
    """Return *existing* with section *module_id* replaced wholesale by *patch*.

    The input is not mutated; other sections are carried over by reference.
    """
    validate_module_id(module_id)
    return {**(existing or {}), module_id: patch}


def extract_module_patch(result: Any, module_id: str) -> Any:
    """Pull the section payload out of a module job's ``result``.

    ``brand_kit_patch`` may be keyed by module id or be the section itself.
    """
    if not isinstance(result, dict):
        return None
    patch = result.get("brand_kit_patch")
    if isinstance(patch, dict) and module_id in patch:
        return patch[module_id]
    return patch
