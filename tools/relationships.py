from farmos_client import ShapeError


def _relationship_list(obj: dict, name: str) -> list:
    relationships = obj.get("relationships") if isinstance(obj, dict) else None
    refs = relationships.get(name) if isinstance(relationships, dict) else None
    if not isinstance(refs, list):
        raise ShapeError(f"The obj parameter does not have a relationships.{name} list")
    return refs


def add_owner(obj: dict, owner_id: str) -> dict:
    """Append the user `owner_id` to obj's relationships.owner.

    Raises ShapeError if obj has no relationships.owner list. Returns obj.
    """
    _relationship_list(obj, "owner").append({"type": "user--user", "id": owner_id})
    return obj


def add_parent(obj: dict, parent_id: str, parent_type: str) -> dict:
    """Append the asset `parent_id` of `parent_type` (e.g. 'asset--land') to relationships.parent."""
    _relationship_list(obj, "parent").append({"type": parent_type, "id": parent_id})
    return obj
