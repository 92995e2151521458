"""
Catalog repository (read-only).

The catalog itself is managed elsewhere; fulfillment only needs to expand a
bundle into the mods it contains.
"""

from __future__ import annotations

from typing import List
from uuid import UUID

from repositories.client import get_supabase
from repositories.rows import response_rows

_BUNDLE_MODS_TABLE: str = "bundle_mods"


def get_bundle_mod_ids(bundle_id: UUID) -> List[UUID]:
    """
    Return every mod id contained in a bundle.

    Returns:
        List of mod ids (empty if the bundle does not exist or has no mods)
    """

    response = (
        get_supabase().table(_BUNDLE_MODS_TABLE)
        .select("mod_id")
        .eq("bundle_id", str(bundle_id))
        .execute()
    )
    return [UUID(str(row["mod_id"])) for row in response_rows(response, "list bundle mods")]


__all__ = ["get_bundle_mod_ids"]
