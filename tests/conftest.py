"""Shared fixtures: an in-memory GitHub Gist API and a temporary library."""

import copy
import hashlib
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import pytest
import requests

from lunasync.config.sync_config import Credentials, SyncConfig
from lunasync.sync.gist_client import GistClient
from lunasync.sync.local_store import SqliteStore


API = "https://api.github.com"
RAW = "https://gist.githubusercontent.com"


class FakeGistServer:
    """
    Stand-in for requests.Session that serves the Gist endpoints used by
    GistClient from memory.

    Every write creates a revision. Files larger than ``truncate_above``
    bytes come back truncated with a raw URL, like the real API.
    """

    def __init__(self, truncate_above: Optional[int] = None):
        self.headers: dict[str, str] = {}
        self.truncate_above = truncate_above
        self.gists: dict[str, dict[str, Any]] = {}
        self.raw: dict[str, str] = {}
        self.requests: list[tuple[str, str, Any]] = []
        self._failures: list[dict[str, Any]] = []
        self._counter = 0
        self._clock = datetime(2024, 1, 1, tzinfo=timezone.utc)

    # ------------------------------------------------------------------
    # Test helpers
    # ------------------------------------------------------------------

    def queue_failure(
        self,
        method: str,
        status: Optional[int] = None,
        match: str = "",
        exc: Optional[Exception] = None,
        headers: Optional[dict[str, str]] = None,
        times: int = 1,
    ) -> None:
        """Make the next matching request(s) fail with a status or an exception."""
        for _ in range(times):
            self._failures.append({
                "method": method, "status": status, "match": match,
                "exc": exc, "headers": headers or {},
            })

    def files(self, gist_id: str) -> dict[str, str]:
        return dict(self.gists[gist_id]["files"])

    def seed(self, files: dict[str, str]) -> str:
        """Create a Gist directly, bypassing the request log."""
        gist_id = self._new_id()
        self.gists[gist_id] = {"files": {}, "history": [], "description": "seeded"}
        self._commit(gist_id, dict(files))
        return gist_id

    def requests_for(self, method: str) -> list[tuple[str, str, Any]]:
        return [r for r in self.requests if r[0] == method]

    # ------------------------------------------------------------------
    # requests.Session interface
    # ------------------------------------------------------------------

    def request(self, method, url, json=None, params=None, timeout=None):
        self.requests.append((method, url, json))

        for index, failure in enumerate(self._failures):
            if failure["method"] == method and failure["match"] in url:
                del self._failures[index]
                if failure["exc"] is not None:
                    raise failure["exc"]
                return self._response(
                    url, failure["status"], {"message": "injected failure"}, failure["headers"]
                )

        if url.startswith(RAW):
            if url not in self.raw:
                return self._response(url, 404, {"message": "Not Found"})
            response = self._response(url, 200, None)
            response._content = self.raw[url].encode("utf-8")
            return response

        path = url[len(API):]
        parts = [p for p in path.split("/") if p]

        if parts == ["user"] and method == "GET":
            return self._response(url, 200, {"login": "tester"})
        if parts == ["rate_limit"] and method == "GET":
            return self._response(url, 200, {"rate": {"limit": 5000, "remaining": 4999}})
        if parts == ["gists"] and method == "POST":
            return self._create(url, json)

        if len(parts) >= 2 and parts[0] == "gists":
            gist_id = parts[1]
            if gist_id not in self.gists:
                return self._response(url, 404, {"message": "Not Found"})
            if len(parts) == 2:
                if method == "GET":
                    return self._response(url, 200, self._render(gist_id))
                if method == "PATCH":
                    return self._patch(url, gist_id, json)
                if method == "DELETE":
                    del self.gists[gist_id]
                    return self._response(url, 204, None)
            if len(parts) == 3 and method == "GET":
                if parts[2] == "commits":
                    return self._commits(url, gist_id, params or {})
                return self._revision(url, gist_id, parts[2])

        return self._response(url, 404, {"message": "Not Found"})

    # ------------------------------------------------------------------
    # Endpoints
    # ------------------------------------------------------------------

    def _create(self, url, payload):
        gist_id = self._new_id()
        self.gists[gist_id] = {
            "files": {},
            "history": [],
            "description": payload.get("description"),
        }
        files = {name: data["content"] for name, data in payload["files"].items()}
        self._commit(gist_id, files)
        return self._response(url, 201, self._render(gist_id))

    def _patch(self, url, gist_id, payload):
        files = dict(self.gists[gist_id]["files"])
        for name, data in payload.get("files", {}).items():
            if data is None:
                files.pop(name, None)
            else:
                files[name] = data["content"]
        self._commit(gist_id, files)
        return self._response(url, 200, self._render(gist_id))

    def _commits(self, url, gist_id, params):
        per_page = int(params.get("per_page", 30))
        page = int(params.get("page", 1))
        history = list(reversed(self.gists[gist_id]["history"]))
        items = [
            {
                "version": entry["version"],
                "committed_at": entry["committed_at"],
                "change_status": {"total": entry["changed"], "additions": entry["changed"], "deletions": 0},
                "user": {"login": "tester"},
            }
            for entry in history[(page - 1) * per_page:page * per_page]
        ]
        return self._response(url, 200, items)

    def _revision(self, url, gist_id, version):
        for entry in self.gists[gist_id]["history"]:
            if entry["version"] == version:
                return self._response(url, 200, self._render(gist_id, entry))
        return self._response(url, 404, {"message": "Not Found"})

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _new_id(self) -> str:
        self._counter += 1
        return hashlib.sha1(f"gist-{self._counter}".encode()).hexdigest()[:20]

    def _commit(self, gist_id: str, files: dict[str, str]) -> None:
        gist = self.gists[gist_id]
        previous = gist["files"]
        changed = sum(1 for name in set(files) | set(previous) if files.get(name) != previous.get(name))
        self._counter += 1
        self._clock += timedelta(minutes=1)
        gist["files"] = files
        gist["history"].append({
            "version": hashlib.sha1(f"rev-{self._counter}".encode()).hexdigest(),
            "committed_at": self._clock.isoformat().replace("+00:00", "Z"),
            "files": copy.deepcopy(files),
            "changed": changed,
        })

    def _render(self, gist_id: str, entry: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        gist = self.gists[gist_id]
        entry = entry or gist["history"][-1]
        rendered = {}
        for name, content in entry["files"].items():
            raw_url = f"{RAW}/tester/{gist_id}/raw/{entry['version']}/{name}"
            self.raw[raw_url] = content
            size = len(content.encode("utf-8"))
            truncated = self.truncate_above is not None and size > self.truncate_above
            rendered[name] = {
                "filename": name,
                "size": size,
                "truncated": truncated,
                "content": content[:self.truncate_above] if truncated else content,
                "raw_url": raw_url,
            }
        return {
            "id": gist_id,
            "html_url": f"https://gist.github.com/{gist_id}",
            "description": gist["description"],
            "public": False,
            "created_at": gist["history"][0]["committed_at"],
            "updated_at": entry["committed_at"],
            "files": rendered,
        }

    @staticmethod
    def _response(url, status, body, headers=None):
        response = requests.Response()
        response.status_code = status
        response.url = url
        response.encoding = "utf-8"
        response.reason = "OK" if status < 400 else "Error"
        response._content = b"" if body is None else json.dumps(body).encode("utf-8")
        response.headers.update(headers or {})
        return response


@pytest.fixture(autouse=True)
def no_retry_delay(monkeypatch):
    """Retries happen instantly in tests."""
    monkeypatch.setattr(GistClient, "RETRY_DELAY", 0)
    monkeypatch.setattr("lunasync.sync.gist_client.time.sleep", lambda seconds: None)


@pytest.fixture(autouse=True)
def app_home(tmp_path, monkeypatch):
    """Point the application data directory at a temporary folder."""
    home = tmp_path / "home"
    monkeypatch.setenv("LUNASYNC_HOME", str(home))
    monkeypatch.delenv("LUNASYNC_GIST_TOKEN", raising=False)
    return home


@pytest.fixture
def server():
    return FakeGistServer()


@pytest.fixture
def client(server):
    return GistClient("test-token", session=server)


@pytest.fixture
def store(tmp_path):
    return SqliteStore(tmp_path / "library.db")


@pytest.fixture
def config():
    return SyncConfig(enabled=True, credentials=Credentials(username="tester", token="test-token"))


def make_novel(novel_id: str, title: str = "Novel", edited: str = "2024-01-01T00:00:00Z",
               chapters: int = 1, text: str = "Hello", **extra) -> dict[str, Any]:
    """Build a novel with one volume and ``chapters`` chapters of one paragraph each."""
    return {
        "id": novel_id,
        "title": title,
        "createdAt": "2023-12-01T00:00:00Z",
        "lastEdited": edited,
        "volumes": [{
            "id": f"{novel_id}-v1",
            "title": "Volume 1",
            "chapters": [
                {
                    "id": f"{novel_id}-c{index}",
                    "title": f"Chapter {index}",
                    "content": [{
                        "id": f"{novel_id}-c{index}-p0",
                        "text": f"{text} {index}",
                        "translations": [],
                    }],
                }
                for index in range(chapters)
            ],
        }],
        **extra,
    }


def make_model(model_id: str, name: str = "Model", edited: str = "2024-01-01T00:00:00Z", **extra):
    return {"id": model_id, "name": name, "lastEdited": edited, **extra}
