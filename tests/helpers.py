"""In-process Azure DevOps stand-in for client and pipeline tests."""

from __future__ import annotations

import contextlib
import dataclasses
import typing as typ

from aiohttp import web
from aiohttp.test_utils import TestServer

from ado_codeql_enabler import AzureDevOpsError, EnablementRequest, Repository


def repo_record(repo_id: str, name: str, project: str | None = None) -> dict[str, typ.Any]:
    """Repository JSON as returned by the git repositories API."""
    record: dict[str, typ.Any] = {"id": repo_id, "name": name, "url": f"https://example.test/{repo_id}"}
    if project is not None:
        record["project"] = {"id": f"proj-{project}", "name": project}
    return record


@dataclasses.dataclass
class StubAzureDevOps:
    """Serves the repository listing and enablement endpoints.

    ``repositories`` maps a project name (or ``None`` for the organization-wide
    listing) to the records returned. ``enablement_status`` maps a project name to
    the status returned by the enablement endpoint; unknown projects get 204.
    ``list_body`` replaces the listing response with a raw 200 body.
    """

    repositories: dict[str | None, list[dict[str, typ.Any]]] = dataclasses.field(default_factory=dict)
    list_status: int = 200
    list_body: str | None = None
    enablement_status: dict[str, int] = dataclasses.field(default_factory=dict)
    requests: list[dict[str, typ.Any]] = dataclasses.field(default_factory=list)

    def app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/{org}/_apis/git/repositories", self._list)
        app.router.add_get("/{org}/{project}/_apis/git/repositories", self._list)
        app.router.add_patch("/{org}/{project}/_apis/management/repositories/enablement", self._enable)
        return app

    async def _record(self, request: web.Request) -> dict[str, typ.Any]:
        body = await request.json() if request.can_read_body else None
        entry = {
            "method": request.method,
            "path": request.path,
            "org": request.match_info["org"],
            "project": request.match_info.get("project"),
            "query": dict(request.query),
            "authorization": request.headers.get("Authorization"),
            "body": body,
        }
        self.requests.append(entry)
        return entry

    async def _list(self, request: web.Request) -> web.StreamResponse:
        entry = await self._record(request)
        if self.list_status == 203:
            return web.Response(status=203, text="<html>Sign in</html>", content_type="text/html")
        if self.list_status != 200:
            return web.json_response({"message": "listing unavailable"}, status=self.list_status)
        if self.list_body is not None:
            return web.Response(status=200, text=self.list_body, content_type="application/json")
        value = self.repositories.get(entry["project"], [])
        return web.json_response({"count": len(value), "value": value})

    async def _enable(self, request: web.Request) -> web.StreamResponse:
        entry = await self._record(request)
        status = self.enablement_status.get(entry["project"], 204)
        if status >= 400:
            return web.json_response({"message": "Advanced Security is not available"}, status=status)
        return web.Response(status=status)

    def patches(self) -> list[dict[str, typ.Any]]:
        return [r for r in self.requests if r["method"] == "PATCH"]


@contextlib.asynccontextmanager
async def serve(stub: StubAzureDevOps) -> typ.AsyncIterator[str]:
    """Run the stub on a local port and yield its root URL."""
    async with TestServer(stub.app()) as server:
        yield f"http://{server.host}:{server.port}"


@dataclasses.dataclass
class FakeClient:
    """Records enablement calls; projects in ``failures`` raise with the given message."""

    failures: dict[str, str] = dataclasses.field(default_factory=dict)
    calls: list[tuple[str, list[EnablementRequest]]] = dataclasses.field(default_factory=list)

    async def enable_advanced_security(
        self, session: typ.Any, project: str, payload: list[EnablementRequest]
    ) -> None:
        self.calls.append((project, payload))
        if project in self.failures:
            raise AzureDevOpsError(self.failures[project], status=500, context=f"enable:{project}")


def repo(repo_id: str, name: str, project: str | None = None) -> Repository:
    return Repository(id=repo_id, name=name, project_name=project)
