from mcp.server.fastmcp import FastMCP

from tools.assets import get_fields_and_beds, get_greenhouses
from tools.resources import get_resource_template
from tools.users import get_users

mcp = FastMCP("farmOS")

mcp.add_tool(get_users)
mcp.add_tool(get_fields_and_beds)
mcp.add_tool(get_greenhouses)
mcp.add_tool(get_resource_template)


# ---------------------------------------------------------------------------
# Prompt templates
# ---------------------------------------------------------------------------

@mcp.prompt()
def farm_locations() -> str:
    """Where can things be grown on this farm?"""
    return (
        "Use get_fields_and_beds to list the active fields and beds, and get_greenhouses "
        "to list the active greenhouses. Present the growing locations grouped into "
        "fields, beds, and greenhouses, and mention which beds sit inside which field "
        "when a parent is recorded."
    )


@mcp.prompt()
def farm_people() -> str:
    """Who works on this farm?"""
    return (
        "Use get_users to list the active user accounts. Present each person with "
        "their roles, and point out which accounts can be assigned as owners of assets and logs."
    )


def main():
    mcp.run()


if __name__ == "__main__":
    main()
