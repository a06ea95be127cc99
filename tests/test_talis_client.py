from __future__ import annotations

from typing import Any

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from fleetboot.api.spec import InstanceSpec, VolumeSpec
from fleetboot.core.exceptions import ProviderError, ProviderNotFoundError
from fleetboot.providers.talis import TalisClient, build_instance_request

pytestmark = [pytest.mark.unit]

API_KEY = "secret-key"


class FakeApi:
    """Minimal fleet API backed by dicts, recording every request."""

    def __init__(self) -> None:
        self.users: dict[str, int] = {"bob": 1}
        self.projects: dict[str, int] = {"existing": 10}
        self.instances: dict[int, dict[str, Any]] = {
            500: {"id": 500, "name": "p-a-0", "status": "Ready", "public_ip": "1.2.3.4",
                  "created_at": "2025-01-01T00:00:00Z", "payload": {"idempotency_key": "k1"}},
            501: {"id": 501, "name": "p-b-1", "status": "pending", "public_ip": None},
        }
        self.requests: list[tuple[str, str, Any]] = []
        self.flaky: int = 0
        self.flaky_status: int = 503
        self.fail_after_create: int | None = None
        self.list_as_object = True

    def app(self) -> web.Application:
        app = web.Application(middlewares=[self._auth])
        app.router.add_get("/api/v1/users", self.get_user)
        app.router.add_post("/api/v1/users", self.create_user)
        app.router.add_get("/api/v1/projects/{name}", self.get_project)
        app.router.add_post("/api/v1/projects", self.create_project)
        app.router.add_post("/api/v1/instances", self.create_instances)
        app.router.add_delete("/api/v1/instances", self.delete_instances)
        app.router.add_get("/api/v1/instances/{id}", self.get_instance)
        app.router.add_get("/api/v1/projects/{name}/instances", self.list_instances)
        return app

    @web.middleware
    async def _auth(self, request: web.Request, handler):
        if request.headers.get("Authorization") != f"Bearer {API_KEY}":
            return web.json_response({"code": 401, "error": "unauthorized"}, status=401)
        body = await request.json() if request.can_read_body else None
        self.requests.append((request.method, request.path_qs, body))
        if self.flaky:
            self.flaky -= 1
            return web.Response(status=self.flaky_status, text="try later")
        return await handler(request)

    async def get_user(self, request: web.Request) -> web.Response:
        name = request.query["username"]
        if name not in self.users:
            # structured not-found with a non-404 HTTP status
            return web.json_response({"code": 404, "error": "user not found"}, status=500)
        return web.json_response({"user": {"id": self.users[name], "username": name}})

    async def create_user(self, request: web.Request) -> web.Response:
        body = await request.json()
        self.users[body["username"]] = len(self.users) + 1
        return web.json_response({"user_id": self.users[body["username"]]})

    async def get_project(self, request: web.Request) -> web.Response:
        name = request.match_info["name"]
        if name not in self.projects:
            return web.json_response({"error": "project not found"}, status=404)
        return web.json_response({"id": self.projects[name], "name": name})

    async def create_project(self, request: web.Request) -> web.Response:
        body = await request.json()
        self.projects[body["name"]] = 77
        return web.json_response({"id": 77, "name": body["name"]})

    async def create_instances(self, request: web.Request) -> web.Response:
        for item in await request.json():
            instance_id = max(self.instances) + 1
            self.instances[instance_id] = {
                "id": instance_id, "name": item["name"], "status": "pending", "payload": item["payload"],
            }
        if self.fail_after_create is not None:
            return web.Response(status=self.fail_after_create, text="upstream timed out")
        return web.json_response({"status": "accepted"}, status=201)

    async def delete_instances(self, request: web.Request) -> web.Response:
        body = await request.json()
        for i in body["instance_ids"]:
            self.instances.pop(i, None)
        return web.json_response({"status": "deleted"})

    async def get_instance(self, request: web.Request) -> web.Response:
        instance = self.instances.get(int(request.match_info["id"]))
        if instance is None:
            return web.json_response({"error": {"code": 404}}, status=404)
        return web.json_response(instance)

    async def list_instances(self, request: web.Request) -> web.Response:
        items = list(self.instances.values())
        if self.list_as_object:
            return web.json_response({"instances": items, "total": len(items)})
        return web.json_response(items)


@pytest.fixture
def api() -> FakeApi:
    return FakeApi()


@pytest.fixture
async def client(api: FakeApi):
    srv = TestServer(api.app())
    await srv.start_server()
    async with TalisClient(f"http://{srv.host}:{srv.port}", API_KEY, timeout=5) as c:
        yield c
    await srv.close()


class TestUsersAndProjects:
    @pytest.mark.asyncio
    async def test_get_user(self, client: TalisClient):
        assert await client.get_user("bob") == 1

    @pytest.mark.asyncio
    async def test_structured_not_found(self, client: TalisClient):
        with pytest.raises(ProviderNotFoundError):
            await client.get_user("alice")

    @pytest.mark.asyncio
    async def test_create_user(self, client: TalisClient, api: FakeApi):
        user_id = await client.create_user("alice")
        assert api.users["alice"] == user_id

    @pytest.mark.asyncio
    async def test_get_project_scoped_to_owner(self, client: TalisClient, api: FakeApi):
        assert await client.get_project("existing", 1) == 10
        assert api.requests[-1][1] == "/api/v1/projects/existing?owner_id=1"

    @pytest.mark.asyncio
    async def test_project_404(self, client: TalisClient):
        with pytest.raises(ProviderNotFoundError):
            await client.get_project("nope", 1)

    @pytest.mark.asyncio
    async def test_create_project(self, client: TalisClient, api: FakeApi):
        assert await client.create_project("new", "desc", 1) == 77
        assert api.requests[-1][2] == {"name": "new", "description": "desc", "owner_id": 1}


class TestInstances:
    @pytest.mark.asyncio
    async def test_create_instance_body(self, client: TalisClient, api: FakeApi):
        spec = InstanceSpec(name="validator-1", ssh_key_name="k", volume=VolumeSpec(size_gb=30))
        await client.create_instance(
            spec, request_name="p-validator-1-0", owner_id=1, project="p", idempotency_key="abc",
        )
        method, path, body = api.requests[-1]
        assert (method, path) == ("POST", "/api/v1/instances")
        assert isinstance(body, list) and len(body) == 1
        assert body[0]["name"] == "p-validator-1-0"
        assert body[0]["number_of_instances"] == 1
        assert body[0]["volumes"] == [{"name": "fleetboot-volume", "size_gb": 30, "mount_point": "/mnt/data"}]
        assert body[0]["payload"] == {"idempotency_key": "abc"}

    @pytest.mark.asyncio
    async def test_get_instance(self, client: TalisClient):
        info = await client.get_instance(500)
        assert info.status == "ready"
        assert info.public_ip == "1.2.3.4"
        assert info.idempotency_key == "k1"

    @pytest.mark.asyncio
    async def test_get_instance_null_ip(self, client: TalisClient):
        assert (await client.get_instance(501)).public_ip == ""

    @pytest.mark.asyncio
    async def test_get_missing_instance(self, client: TalisClient):
        with pytest.raises(ProviderNotFoundError):
            await client.get_instance(999)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("as_object", [True, False])
    async def test_list_filters_status(self, client: TalisClient, api: FakeApi, as_object: bool):
        api.list_as_object = as_object
        pending = await client.list_instances("p", 1, frozenset({"pending", "provisioning"}))
        assert [i.id for i in pending] == [501]
        assert len(await client.list_instances("p", 1)) == 2

    @pytest.mark.asyncio
    async def test_delete_by_id(self, client: TalisClient, api: FakeApi):
        await client.delete_instances("p", 1, [500])
        method, path, body = api.requests[-1]
        assert (method, path) == ("DELETE", "/api/v1/instances")
        assert body == {"owner_id": 1, "project_name": "p", "instance_ids": [500]}
        assert 500 not in api.instances


class TestErrors:
    @pytest.mark.asyncio
    async def test_transient_errors_are_retried(self, client: TalisClient, api: FakeApi):
        api.flaky = 2
        assert await client.get_user("bob") == 1
        assert len(api.requests) == 3

    @pytest.mark.asyncio
    async def test_auth_failure_is_provider_error(self, api: FakeApi):
        srv = TestServer(api.app())
        await srv.start_server()
        try:
            async with TalisClient(f"http://{srv.host}:{srv.port}", "wrong") as c:
                with pytest.raises(ProviderError) as exc_info:
                    await c.get_user("bob")
        finally:
            await srv.close()
        assert not isinstance(exc_info.value, ProviderNotFoundError)
        assert exc_info.value.status == 401


def test_build_instance_request_copies_spec():
    spec = InstanceSpec(name="n", region="fra1", size="s-4vcpu-8gb", tags=("a", "b"))
    req = build_instance_request(spec, request_name="r", owner_id=3, project="p", idempotency_key="k")
    assert req["region"] == "fra1"
    assert req["size"] == "s-4vcpu-8gb"
    assert req["tags"] == ["a", "b"]
    assert req["project_name"] == "p"
    assert req["provision"] is False


class TestCreateRetries:
    SPEC = InstanceSpec(name="validator-1")

    async def create(self, client: TalisClient) -> None:
        await client.create_instance(
            self.SPEC, request_name="p-validator-1-0", owner_id=1, project="p", idempotency_key="abc",
        )

    @staticmethod
    def posts(api: FakeApi) -> list[Any]:
        return [r for r in api.requests if r[:2] == ("POST", "/api/v1/instances")]

    @pytest.mark.asyncio
    async def test_gateway_error_after_commit_is_not_resent(self, client: TalisClient, api: FakeApi):
        api.fail_after_create = 504

        with pytest.raises(ProviderError) as exc_info:
            await self.create(client)

        assert exc_info.value.status == 504
        assert len(self.posts(api)) == 1
        assert [i["name"] for i in api.instances.values()].count("p-validator-1-0") == 1

    @pytest.mark.asyncio
    async def test_gateway_error_before_commit_is_not_resent(self, client: TalisClient, api: FakeApi):
        api.flaky = 1

        with pytest.raises(ProviderError):
            await self.create(client)
        assert len(self.posts(api)) == 1

    @pytest.mark.asyncio
    async def test_rate_limited_create_is_retried(self, client: TalisClient, api: FakeApi):
        api.flaky, api.flaky_status = 1, 429

        await self.create(client)

        assert len(self.posts(api)) == 2
        assert [i["name"] for i in api.instances.values()].count("p-validator-1-0") == 1

    @pytest.mark.asyncio
    async def test_delete_is_retried_on_gateway_error(self, client: TalisClient, api: FakeApi):
        api.flaky, api.flaky_status = 1, 502

        await client.delete_instances("p", 1, [500])

        assert [r[0] for r in api.requests] == ["DELETE", "DELETE"]
        assert 500 not in api.instances
