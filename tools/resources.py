import json
import logging

from farmos_client import FarmOSClient, FarmOSError, ShapeError, get_client


def _schema_section(schema: dict, section: str) -> dict:
    """Properties of the 'attributes' or 'relationships' part of a resource schema."""
    for container in ("definitions", "properties"):
        part = (schema.get(container) or {}).get(section)
        if isinstance(part, dict):
            return part.get("properties") or {}
    return {}


def _is_to_one(prop: dict) -> bool:
    data = (prop.get("properties") or {}).get("data") or {}
    return data.get("type") == "object"


def create_resource(farm: FarmOSClient, resource_type: str, **attributes) -> dict:
    """Build an unsaved resource of `resource_type` from the attached schema.

    Every schema attribute is present (schema default or None) and every
    relationship starts empty, so add_owner()/add_parent() can append to it.
    Keyword arguments set attribute values and must be schema attributes.

    Example:
        bed = create_resource(farm, "asset--land", name="Bed C", land_type="bed")
        add_parent(bed, field_id, "asset--land")
        farm.send(bed)
    """
    schema = farm.get_schema(resource_type)
    attr_props = _schema_section(schema, "attributes")
    rel_props = _schema_section(schema, "relationships")

    unknown = sorted(set(attributes) - set(attr_props))
    if unknown:
        raise ShapeError(f"{resource_type} has no attribute(s): {', '.join(unknown)}")

    return {
        "id": None,
        "type": resource_type,
        "attributes": {
            name: attributes.get(name, prop.get("default"))
            for name, prop in attr_props.items()
        },
        "relationships": {
            name: None if _is_to_one(prop) else []
            for name, prop in rel_props.items()
        },
        "meta": {},
    }


def describe_resource(farm: FarmOSClient, resource_type: str) -> dict:
    """Log and return an empty template of `resource_type`. A development aid."""
    template = create_resource(farm, resource_type)
    logging.info("RESOURCE template for %s:\n%s", resource_type, json.dumps(template, indent=2))
    return template


def get_resource_template(resource_type: str) -> str:
    """Show the structure of a farmOS record type, built from the server schema.

    Args:
        resource_type: Full type name, e.g. 'asset--land', 'log--harvest', 'user--user'.

    Returns:
        JSON of an empty record with every attribute and relationship the type supports.
    """
    try:
        return json.dumps(create_resource(get_client(), resource_type), indent=2)

    except (FarmOSError, ValueError) as e:
        return json.dumps({"error": str(e)})
