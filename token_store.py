import json
import logging
import os
from pathlib import Path
from typing import Protocol

TOKEN_KEY = "token"
DEFAULT_TOKEN_DIR = Path(__file__).parent / "scratch"


class TokenStore(Protocol):
    """Persistent key/value slot holding the serialized OAuth token."""

    def get(self) -> dict | None: ...

    def set(self, token: dict) -> None: ...


class MemoryTokenStore:
    """In-process token store.

    Lives only as long as the object does, so tests create one per session and
    use snapshot()/restore() to carry the token from one test case to the next.
    """

    def __init__(self, token: dict | None = None):
        self._items: dict[str, str] = {}
        if token is not None:
            self.set(token)

    def get(self) -> dict | None:
        raw = self._items.get(TOKEN_KEY)
        return None if raw is None else json.loads(raw)

    def set(self, token: dict) -> None:
        self._items[TOKEN_KEY] = json.dumps(token)

    def clear(self) -> None:
        self._items.clear()

    def snapshot(self) -> dict[str, str]:
        return dict(self._items)

    def restore(self, snapshot: dict[str, str]) -> None:
        self._items.update(snapshot)


class FileTokenStore:
    """Token store backed by one file per key inside `directory`."""

    def __init__(self, directory: str | os.PathLike):
        self.directory = Path(directory)

    @property
    def path(self) -> Path:
        return self.directory / TOKEN_KEY

    def get(self) -> dict | None:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        return json.loads(raw)

    def set(self, token: dict) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(token), encoding="utf-8")
        logging.debug("TOKEN stored in %s", self.path)

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)


def default_token_store() -> FileTokenStore:
    directory = os.environ.get("FARMOS_TOKEN_DIR") or DEFAULT_TOKEN_DIR
    return FileTokenStore(directory)
