from pyuca import Collator

_collator = Collator()


def _collation_key(value) -> tuple:
    text = "" if value is None else str(value)
    # Unicode collation; the raw string keeps ties deterministic
    return (_collator.sort_key(text), text)


def sort_by_attribute(resources: list[dict], attribute: str) -> list[dict]:
    """Sort resources in place by `attributes[attribute]`, locale-aware and stable."""
    resources.sort(key=lambda r: _collation_key(r.get("attributes", {}).get(attribute)))
    return resources


def by_name(resources: list[dict], attribute: str = "name") -> dict:
    """Map `attributes[attribute]` to each resource. Later duplicates win."""
    return {r["attributes"][attribute]: r for r in resources}


def by_id(resources: list[dict]) -> dict:
    return {r["id"]: r for r in resources}
