import itertools
import json
from urllib.parse import parse_qs

import httpx
import pytest

from farmos_client import connect
from token_store import MemoryTokenStore

HOST = "http://farmos"

USERNAMES = [
    "worker1",
    "manager2",
    "admin",
    "viewer1",
    "guest",
    "manager4",
    "fieldworker1",
    "manager1",
    "manager3",
]

_TO_MANY = {"type": "object", "properties": {"data": {"type": "array"}}}
_TO_ONE = {"type": "object", "properties": {"data": {"type": "object"}}}


def _schema(attributes: dict, relationships: dict) -> dict:
    return {
        "$schema": "http://json-schema.org/draft-07/schema",
        "type": "object",
        "definitions": {
            "attributes": {"type": "object", "properties": attributes},
            "relationships": {"type": "object", "properties": relationships},
        },
    }


SCHEMAS = {
    "user--user": _schema(
        {"name": {"type": "string"}, "display_name": {"type": "string"}, "status": {"type": "boolean"}},
        {"roles": _TO_MANY},
    ),
    "asset--land": _schema(
        {
            "name": {"type": "string"},
            "status": {"type": "string", "default": "active"},
            "land_type": {"type": "string"},
            "is_location": {"type": "boolean", "default": True},
        },
        {"owner": _TO_MANY, "parent": _TO_MANY, "file": _TO_MANY},
    ),
    "asset--structure": _schema(
        {
            "name": {"type": "string"},
            "status": {"type": "string", "default": "active"},
            "structure_type": {"type": "string"},
        },
        {"owner": _TO_MANY, "parent": _TO_MANY},
    ),
    "log--activity": _schema(
        {"name": {"type": "string"}, "status": {"type": "string", "default": "done"}},
        {"owner": _TO_MANY, "asset": _TO_MANY, "plan": _TO_ONE},
    ),
}


def make_user(name: str, active: bool = True) -> dict:
    return {
        "type": "user--user",
        "id": f"user-{name.lower()}",
        "attributes": {"name": name, "display_name": name, "status": active},
        "relationships": {"roles": {"data": [{"type": "user_role--user_role", "id": "role-farm"}]}},
    }


def make_asset(bundle: str, name: str, subtype: str, status: str = "active") -> dict:
    subtype_field = "land_type" if bundle == "land" else "structure_type"
    return {
        "type": f"asset--{bundle}",
        "id": f"{bundle}-{name.lower().replace(' ', '-')}",
        "attributes": {"name": name, "status": status, subtype_field: subtype},
        "relationships": {
            "owner": {"data": [], "links": {"self": {"href": f"{HOST}/api/relationships/owner"}}},
            "parent": {"data": []},
        },
    }


def _matches(resource: dict, params: httpx.QueryParams) -> bool:
    attrs = resource["attributes"]

    def as_param(value) -> str:
        if isinstance(value, bool):
            return str(int(value))
        return str(value)

    for key in params.keys():
        if not key.startswith("filter["):
            continue
        if key.endswith("[condition][path]"):
            group = key[: -len("[condition][path]")]
            field = params[key]
            assert params[f"{group}[condition][operator]"] == "IN"
            if as_param(attrs.get(field)) not in params.get_list(f"{group}[condition][value][]"):
                return False
        elif "[condition]" not in key:
            field = key[len("filter["):-1]
            if as_param(attrs.get(field)) != params[key]:
                return False
    return True


class IssuedTokens:
    """Tokens a fake host has handed out; shared so a saved token stays valid."""

    def __init__(self):
        self.access_tokens: set[str] = set()
        self.refresh_tokens: set[str] = set()
        self.counter = itertools.count(1)


class FakeFarmOS:
    """Enough of a farmOS host to serve OAuth, the schema and collection queries."""

    def __init__(self, issued: IssuedTokens | None = None):
        issued = issued or IssuedTokens()
        self.version = "2.2.0"
        self.page_size = 50
        self.resources: dict[str, list[dict]] = {
            "user--user": [make_user(n) for n in USERNAMES] + [make_user("Anonymous", active=False)],
            "asset--land": [
                make_asset("land", "Field B", "field"),
                make_asset("land", "Bed A", "bed"),
                make_asset("land", "Field A", "field"),
                make_asset("land", "Bed B", "bed"),
                make_asset("land", "Old Field", "field", status="archived"),
                make_asset("land", "Barn Yard", "other"),
            ],
            "asset--structure": [
                make_asset("structure", "Greenhouse 2", "greenhouse"),
                make_asset("structure", "Barn", "building"),
                make_asset("structure", "Greenhouse 1", "greenhouse"),
                make_asset("structure", "Hoop House", "greenhouse", status="archived"),
            ],
            "log--activity": [],
        }
        self.requests: list[httpx.Request] = []
        self.token_requests: list[str] = []
        self.failing_paths: set[str] = set()
        self.access_tokens = issued.access_tokens
        self.refresh_tokens = issued.refresh_tokens
        self._token_counter = issued.counter
        self._counter = itertools.count(1)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def issue_token(self) -> dict:
        n = next(self._token_counter)
        token = {
            "access_token": f"token-{n}",
            "refresh_token": f"refresh-{n}",
            "expires_in": 3600,
            "token_type": "Bearer",
        }
        self.access_tokens.add(token["access_token"])
        self.refresh_tokens.add(token["refresh_token"])
        return token

    def collection_requests(self, resource_type: str) -> list[httpx.Request]:
        entity, bundle = resource_type.split("--")
        return [
            r for r in self.requests
            if r.method == "GET" and r.url.path == f"/api/{entity}/{bundle}"
        ]

    # ------------------------------------------------------------------

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path in self.failing_paths:
            return httpx.Response(500, json={"errors": [{"title": "Internal Server Error"}]})

        if path == "/oauth/token":
            return self._token(request)

        auth = request.headers.get("Authorization", "")
        if auth.removeprefix("Bearer ") not in self.access_tokens:
            return httpx.Response(401, json={"errors": [{"title": "Unauthorized"}]})

        if path == "/api":
            return self._root()

        parts = path.strip("/").split("/")
        if len(parts) == 5 and parts[3:] == ["resource", "schema"]:
            schema = SCHEMAS.get(f"{parts[1]}--{parts[2]}")
            if schema is None:
                return httpx.Response(404)
            return httpx.Response(200, json=schema)

        if len(parts) == 3:
            resource_type = f"{parts[1]}--{parts[2]}"
            if resource_type not in self.resources:
                return httpx.Response(404)
            if request.method == "GET":
                return self._collection(request, resource_type)
            if request.method == "POST":
                return self._create(request, resource_type)

        return httpx.Response(404)

    def _token(self, request: httpx.Request) -> httpx.Response:
        form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
        grant = form.get("grant_type")
        self.token_requests.append(grant)
        if form.get("client_id") != "farm":
            return httpx.Response(400, json={"error": "invalid_client"})
        if grant == "password" and form.get("username") == "admin" and form.get("password") == "admin":
            return httpx.Response(200, json=self.issue_token())
        if grant == "refresh_token" and form.get("refresh_token") in self.refresh_tokens:
            self.refresh_tokens.discard(form["refresh_token"])
            return httpx.Response(200, json=self.issue_token())
        return httpx.Response(400, json={"error": "invalid_grant"})

    def _root(self) -> httpx.Response:
        links = {"self": {"href": f"{HOST}/api"}}
        for resource_type in SCHEMAS:
            entity, bundle = resource_type.split("--")
            links[resource_type] = {"href": f"{HOST}/api/{entity}/{bundle}"}
        meta = {"farm": {"name": "Test Farm", "url": HOST, "version": self.version}}
        return httpx.Response(200, json={"jsonapi": {"version": "1.0"}, "data": [], "meta": meta, "links": links})

    def _collection(self, request: httpx.Request, resource_type: str) -> httpx.Response:
        params = request.url.params
        matches = [r for r in self.resources[resource_type] if _matches(r, params)]
        offset = int(params.get("page[offset]", 0))
        page = matches[offset:offset + self.page_size]
        body = {"data": page, "links": {"self": {"href": str(request.url)}}}
        if offset + self.page_size < len(matches):
            next_url = request.url.copy_set_param("page[offset]", offset + self.page_size)
            body["links"]["next"] = {"href": str(next_url)}
        return httpx.Response(200, json=body)

    def _create(self, request: httpx.Request, resource_type: str) -> httpx.Response:
        data = json.loads(request.content)["data"]
        data["id"] = f"new-{next(self._counter)}"
        self.resources[resource_type].append(data)
        return httpx.Response(201, json={"data": data})


@pytest.fixture(scope="session")
def issued_tokens():
    return IssuedTokens()


@pytest.fixture(scope="session")
def saved_token_storage():
    return {}


@pytest.fixture
def fake_host(issued_tokens):
    return FakeFarmOS(issued_tokens)


@pytest.fixture
def token_store(saved_token_storage):
    """Token store restored from, and saved back to, session storage around each test."""
    store = MemoryTokenStore()
    store.restore(saved_token_storage)
    yield store
    saved_token_storage.update(store.snapshot())


@pytest.fixture
def farm(fake_host, token_store):
    client = connect(HOST, "farm", "admin", "admin", token_store=token_store, transport=fake_host.transport)
    yield client
    client.close()
