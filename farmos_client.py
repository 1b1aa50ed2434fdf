import logging
import os
import re
import sys
import time
from pathlib import Path

import httpx
from dotenv import load_dotenv

from token_store import TokenStore, default_token_store

load_dotenv(Path(__file__).parent / ".env")

logging.basicConfig(
    stream=sys.stderr,
    level=os.environ.get("FARMOS_LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s [farmos-util] %(levelname)s %(message)s",
)

JSONAPI_MEDIA_TYPE = "application/vnd.api+json"

# farmOS 1.x predates the JSON:API module and its schema endpoints.
MIN_FARMOS_MAJOR_VERSION = 2

_client = None


# ------------------------------------------------------------------
# Errors
# ------------------------------------------------------------------

class FarmOSError(Exception):
    """Base class for every error raised by this package."""


class AuthenticationError(FarmOSError):
    """Token acquisition or refresh failed (bad credentials, unreachable host)."""


class SchemaFetchError(FarmOSError):
    """The resource schema could not be fetched or is not usable."""


class TransportError(FarmOSError):
    """A request against the JSON:API failed after the connection was made."""

    def __init__(self, message: str, response: httpx.Response | None = None):
        super().__init__(message)
        self.response = response


class ShapeError(FarmOSError, LookupError):
    """A resource object lacks the structure an operation needs."""


# ------------------------------------------------------------------
# JSON:API helpers
# ------------------------------------------------------------------

def split_type(resource_type: str) -> tuple[str, str]:
    """Split 'asset--land' into ('asset', 'land')."""
    entity, sep, bundle = resource_type.partition("--")
    if not sep or not entity or not bundle:
        raise ValueError(f"Resource type must look like 'entity--bundle', got {resource_type!r}")
    return entity, bundle


def filter_params(filters: dict) -> dict:
    """Translate a {field: value} filter into JSON:API query parameters.

    Booleans are sent as 1/0. A list of values becomes an IN condition group.
    """
    params: dict = {}
    for field, value in filters.items():
        if isinstance(value, bool):
            params[f"filter[{field}]"] = int(value)
        elif isinstance(value, (list, tuple)):
            group = f"{field}_filter"
            params[f"filter[{group}][condition][path]"] = field
            params[f"filter[{group}][condition][operator]"] = "IN"
            params[f"filter[{group}][condition][value][]"] = list(value)
        else:
            params[f"filter[{field}]"] = value
    return params


def _ref(item):
    if isinstance(item, dict) and item.get("id"):
        return {"type": item.get("type"), "id": item["id"]}
    return None


def flatten_resource(resource: dict) -> dict:
    """Turn a JSON:API resource into a plain record.

    Relationship objects ({"data": [...], "links": ...}) collapse to their
    references: a list of {"type", "id"} for to-many relationships, a single
    reference or None for to-one relationships.
    """
    relationships = {}
    for name, rel in (resource.get("relationships") or {}).items():
        data = rel.get("data") if isinstance(rel, dict) else rel
        if isinstance(data, list):
            relationships[name] = [r for r in map(_ref, data) if r is not None]
        else:
            relationships[name] = _ref(data)

    return {
        "id": resource.get("id"),
        "type": resource.get("type"),
        "attributes": dict(resource.get("attributes") or {}),
        "relationships": relationships,
        "meta": dict(resource.get("meta") or {}),
    }


def serialize_resource(resource: dict) -> dict:
    """Inverse of flatten_resource, for POST/PATCH payloads."""
    payload: dict = {
        "type": resource["type"],
        "attributes": {k: v for k, v in (resource.get("attributes") or {}).items() if v is not None},
    }
    if resource.get("id"):
        payload["id"] = resource["id"]

    rels = {
        name: {"data": refs}
        for name, refs in (resource.get("relationships") or {}).items()
        if refs is not None
    }
    if rels:
        payload["relationships"] = rels
    return payload


def _major_version(version) -> int | None:
    match = re.match(r"\s*(\d+)", str(version or ""))
    return int(match.group(1)) if match else None


class FarmOSClient:
    """httpx wrapper around the farmOS JSON:API with persisted OAuth2 tokens."""

    def __init__(
        self,
        url: str,
        client_id: str,
        token_store: TokenStore,
        client_secret: str = "",
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.base_url = url.rstrip("/")
        self.api_url = f"{self.base_url}/api"
        self._token_url = f"{self.base_url}/oauth/token"
        self._client_id = client_id
        self._client_secret = client_secret
        self.token_store = token_store
        self.schema: dict = {}
        self.farm_info: dict = {}
        self._http = httpx.Client(timeout=timeout, transport=transport)

    def close(self) -> None:
        self._http.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------

    def get_token(self) -> dict | None:
        return self.token_store.get()

    def set_token(self, token: dict) -> None:
        self.token_store.set(token)

    def _request_token(self, data: dict) -> dict:
        data = {"client_id": self._client_id, **data}
        if self._client_secret:
            data["client_secret"] = self._client_secret

        try:
            resp = self._http.post(self._token_url, data=data)
            logging.debug("AUTH token response: %s", resp.status_code)
            resp.raise_for_status()
            token = resp.json()
            if not isinstance(token, dict) or not token.get("access_token"):
                raise ValueError("response carries no access_token")
        except (httpx.HTTPError, ValueError) as e:
            raise AuthenticationError(f"Token request to {self._token_url} failed: {e}") from e

        if token.get("expires_in") is not None:
            token["expires"] = time.time() + float(token["expires_in"])
        self.set_token(token)
        return token

    def authorize(self, username: str, password: str) -> dict:
        logging.info("AUTH fetching token via password grant from %s", self._token_url)
        token = self._request_token(
            {"grant_type": "password", "username": username, "password": password}
        )
        logging.info("AUTH token acquired successfully")
        return token

    def refresh(self, token: dict) -> dict:
        if not token.get("refresh_token"):
            raise AuthenticationError("Stored token has expired and carries no refresh token")
        logging.info("AUTH token expired, refreshing")
        return self._request_token(
            {"grant_type": "refresh_token", "refresh_token": token["refresh_token"]}
        )

    def _auth_headers(self) -> dict:
        token = self.get_token()
        if token is None:
            raise AuthenticationError("No token stored; authorize() must run first")
        if token.get("expires") is not None and token["expires"] <= time.time():
            token = self.refresh(token)
        return {
            "Authorization": f"{token.get('token_type') or 'Bearer'} {token['access_token']}",
            "Accept": JSONAPI_MEDIA_TYPE,
        }

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        headers = {**self._auth_headers(), **kwargs.pop("headers", {})}
        logging.debug("REQUEST %s %s params=%s", method, url, kwargs.get("params"))
        try:
            resp = self._http.request(method, url, headers=headers, **kwargs)
            logging.debug("RESPONSE %s %s got %s", method, url, resp.status_code)
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise TransportError(
                f"{method} {url} returned {e.response.status_code}", response=e.response
            ) from e
        except httpx.HTTPError as e:
            raise TransportError(f"{method} {url} failed: {e}") from e
        return resp

    def _json(self, method: str, url: str, **kwargs) -> dict:
        resp = self._request(method, url, **kwargs)
        try:
            return resp.json()
        except ValueError as e:
            raise TransportError(f"{method} {url} did not return JSON", response=resp) from e

    def send(self, resource: dict) -> dict:
        """Create (no id) or update (with id) a resource; returns the stored record."""
        entity, bundle = split_type(resource["type"])
        url = f"{self.api_url}/{entity}/{bundle}"
        method = "POST"
        if resource.get("id"):
            url = f"{url}/{resource['id']}"
            method = "PATCH"
        headers = {"Content-Type": JSONAPI_MEDIA_TYPE}
        body = self._json(method, url, json={"data": serialize_resource(resource)}, headers=headers)
        return flatten_resource(body.get("data") or {})

    # ------------------------------------------------------------------
    # Collections
    # ------------------------------------------------------------------

    def fetch(self, resource_type: str, filter: dict | None = None, limit: int | None = None) -> list[dict]:
        """Fetch every resource of `resource_type` matching `filter`.

        With limit=None the `links.next` chain is followed to the end.
        """
        entity, bundle = split_type(resource_type)
        url = f"{self.api_url}/{entity}/{bundle}"
        params: dict | None = filter_params(filter or {})
        if limit is not None:
            params["page[limit]"] = limit

        resources: list[dict] = []
        while url:
            body = self._json("GET", url, params=params)
            resources.extend(flatten_resource(r) for r in body.get("data") or [])
            if limit is not None and len(resources) >= limit:
                return resources[:limit]
            url = ((body.get("links") or {}).get("next") or {}).get("href")
            # next links already carry the full query string
            params = None

        logging.debug("FETCH %s returned %d resources", resource_type, len(resources))
        return resources

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    def fetch_schema(self) -> dict:
        """Fetch the JSON schema of every resource type the host exposes.

        Returns {entity: {bundle: schema}} and records the host's farm metadata.
        """
        logging.info("SCHEMA fetching from %s", self.api_url)
        try:
            root = self._json("GET", self.api_url)
        except TransportError as e:
            raise SchemaFetchError(f"Could not fetch the JSON:API root document: {e}") from e

        self.farm_info = (root.get("meta") or {}).get("farm") or {}
        major = _major_version(self.farm_info.get("version"))
        if major is not None and major < MIN_FARMOS_MAJOR_VERSION:
            raise SchemaFetchError(
                f"farmOS {self.farm_info.get('version')} is not supported; "
                f"version {MIN_FARMOS_MAJOR_VERSION}.x or later is required"
            )

        schema: dict = {}
        for resource_type, link in (root.get("links") or {}).items():
            if "--" not in resource_type:
                continue
            entity, bundle = split_type(resource_type)
            href = link.get("href") if isinstance(link, dict) else link
            try:
                schema.setdefault(entity, {})[bundle] = self._json("GET", f"{href}/resource/schema")
            except TransportError as e:
                raise SchemaFetchError(f"Could not fetch the schema for {resource_type}: {e}") from e

        logging.info("SCHEMA loaded %d resource types", sum(len(b) for b in schema.values()))
        return schema

    def set_schema(self, schema: dict) -> None:
        self.schema = schema

    def get_schema(self, resource_type: str) -> dict:
        entity, bundle = split_type(resource_type)
        try:
            return self.schema[entity][bundle]
        except KeyError:
            raise ShapeError(f"No schema is attached for {resource_type}") from None


# ------------------------------------------------------------------
# Connection factory
# ------------------------------------------------------------------

def connect(
    host_url: str,
    client_id: str,
    username: str | None,
    password: str | None,
    *,
    client_secret: str = "",
    token_store: TokenStore | None = None,
    timeout: float = 30.0,
    transport: httpx.BaseTransport | None = None,
) -> FarmOSClient:
    """Return a FarmOSClient authorized as `username` with the schema attached.

    A token already held by `token_store` is reused, so no authorization
    request is made. Without a store the file-backed default is used.
    """
    store = token_store if token_store is not None else default_token_store()
    farm = FarmOSClient(
        host_url,
        client_id,
        store,
        client_secret=client_secret,
        timeout=timeout,
        transport=transport,
    )
    try:
        if farm.get_token() is None:
            farm.authorize(username, password)
        else:
            logging.info("AUTH reusing stored token for %s", farm.base_url)
        farm.set_schema(farm.fetch_schema())
    except FarmOSError:
        farm.close()
        raise
    return farm


# ------------------------------------------------------------------
# Singleton factory
# ------------------------------------------------------------------

def get_client() -> FarmOSClient:
    global _client
    if _client is None:
        _client = _create_client()
    return _client


def reset_client() -> None:
    global _client
    if _client is not None:
        _client.close()
    _client = None


def _create_client() -> FarmOSClient:
    url = os.environ.get("FARMOS_URL", "").rstrip("/")
    if not url:
        raise ValueError("FARMOS_URL is required")
    has_user = bool(os.environ.get("FARMOS_USERNAME"))
    has_pass = bool(os.environ.get("FARMOS_PASSWORD"))
    logging.info("CLIENT connecting to %s, username set: %s, password set: %s", url, has_user, has_pass)

    return connect(
        url,
        os.environ.get("FARMOS_CLIENT_ID", "farm"),
        os.environ.get("FARMOS_USERNAME") or None,
        os.environ.get("FARMOS_PASSWORD") or None,
        client_secret=os.environ.get("FARMOS_CLIENT_SECRET", ""),
    )
