import json
from typing import Optional

from farmos_client import FarmOSClient, FarmOSError, get_client
from tools.lookups import by_id, by_name, sort_by_attribute

# Land types that count as growing locations, in concatenation order.
FIELD_AND_BED_TYPES = ["field", "bed"]

# An IN filter on land_type is unreliable in the farmOS.js client
# (https://github.com/farmOS/farmOS.js/issues/86), so one request is made per
# land type. Flip once a combined filter is confirmed to return every match.
COMBINED_LAND_FILTER = False


# ---------------------------------------------------------------------------
# Normalisation helpers
# ---------------------------------------------------------------------------

def _refs(refs) -> list[dict]:
    items = refs if isinstance(refs, list) else ([refs] if refs else [])
    return [{"id": r["id"], "type": r["type"].split("--", 1)[-1]} for r in items]


def _normalize_asset(resource: dict) -> dict:
    attrs = resource.get("attributes", {})
    rels = resource.get("relationships", {})
    asset_type = (resource.get("type") or "").split("--", 1)[-1]

    result = {
        "id": resource.get("id"),
        "type": asset_type,
        "name": attrs.get("name"),
        "status": attrs.get("status"),
        "parents": _refs(rels.get("parent")),
        "owners": _refs(rels.get("owner")),
    }

    if asset_type == "land":
        result["land_type"] = attrs.get("land_type")
    elif asset_type == "structure":
        result["structure_type"] = attrs.get("structure_type")

    return result


# ---------------------------------------------------------------------------
# Fetchers
# ---------------------------------------------------------------------------

def _fetch_land(farm: FarmOSClient, land_types: list[str]) -> list[dict]:
    """Active land assets of the given land types, grouped in land_types order."""
    if COMBINED_LAND_FILTER:
        return farm.fetch("asset--land", filter={"land_type": land_types, "status": "active"})

    land: list[dict] = []
    for land_type in land_types:
        land.extend(farm.fetch("asset--land", filter={"land_type": land_type, "status": "active"}))
    return land


def fetch_fields_and_beds(farm: FarmOSClient) -> list[dict]:
    """Fetch the active land assets that are fields or beds, ordered by name.

    Each call hits the farmOS host; cache the result if it is needed more than once.
    """
    return sort_by_attribute(_fetch_land(farm, FIELD_AND_BED_TYPES), "name")


def fields_and_beds_by_name(fields_and_beds: list[dict]) -> dict:
    return by_name(fields_and_beds)


def fields_and_beds_by_id(fields_and_beds: list[dict]) -> dict:
    return by_id(fields_and_beds)


def fetch_greenhouses(farm: FarmOSClient) -> list[dict]:
    """Fetch the active structure assets of structure_type greenhouse, ordered by name."""
    greenhouses = farm.fetch(
        "asset--structure",
        filter={"structure_type": "greenhouse", "status": "active"},
    )
    return sort_by_attribute(greenhouses, "name")


def greenhouses_by_name(greenhouses: list[dict]) -> dict:
    return by_name(greenhouses)


def greenhouses_by_id(greenhouses: list[dict]) -> dict:
    return by_id(greenhouses)


# ---------------------------------------------------------------------------
# Read tools
# ---------------------------------------------------------------------------

def get_fields_and_beds(name: Optional[str] = None) -> str:
    """List the active fields and beds (land assets) in alphabetical order.

    Args:
        name: Return only the field or bed with this exact name (optional).

    Returns:
        JSON with 'assets' list and 'returned' count.
    """
    try:
        land = fetch_fields_and_beds(get_client())
        if name:
            match = fields_and_beds_by_name(land).get(name)
            land = [match] if match else []
        assets = [_normalize_asset(a) for a in land]
        return json.dumps({"returned": len(assets), "assets": assets}, indent=2)

    except FarmOSError as e:
        return json.dumps({"error": str(e)})


def get_greenhouses(name: Optional[str] = None) -> str:
    """List the active greenhouses (structure assets) in alphabetical order.

    Args:
        name: Return only the greenhouse with this exact name (optional).

    Returns:
        JSON with 'assets' list and 'returned' count.
    """
    try:
        greenhouses = fetch_greenhouses(get_client())
        if name:
            match = greenhouses_by_name(greenhouses).get(name)
            greenhouses = [match] if match else []
        assets = [_normalize_asset(a) for a in greenhouses]
        return json.dumps({"returned": len(assets), "assets": assets}, indent=2)

    except FarmOSError as e:
        return json.dumps({"error": str(e)})
