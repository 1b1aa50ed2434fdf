import json

from farmos_client import FarmOSClient, FarmOSError, get_client
from tools.lookups import by_id, by_name, sort_by_attribute


def _normalize_user(resource: dict) -> dict:
    attrs = resource.get("attributes", {})
    roles = resource.get("relationships", {}).get("roles") or []
    return {
        "id": resource.get("id"),
        "name": attrs.get("display_name") or attrs.get("name"),
        "roles": [r["id"] for r in roles],
    }


def fetch_users(farm: FarmOSClient) -> list[dict]:
    """Fetch all active users, ordered by display_name.

    The Anonymous user is never active, so it never appears. Each call hits
    the farmOS host; cache the result if it is needed more than once.
    """
    users = farm.fetch("user--user", filter={"status": True})
    return sort_by_attribute(users, "display_name")


def users_by_name(users: list[dict]) -> dict:
    return by_name(users, "display_name")


def users_by_id(users: list[dict]) -> dict:
    return by_id(users)


def get_users() -> str:
    """List the active farmOS user accounts, ordered by display name.

    Use this to look up user UUIDs when assigning owners to assets or logs.

    Returns:
        JSON with 'users' list and 'returned' count.
    """
    try:
        users = [_normalize_user(u) for u in fetch_users(get_client())]
        return json.dumps({"returned": len(users), "users": users}, indent=2)

    except FarmOSError as e:
        return json.dumps({"error": str(e)})
