"""Tests for the Manager daemon and its instance swap."""

import asyncio

import httpx
import pytest
from fastapi.testclient import TestClient

from deployd.config import Config
from deployd.errors import SupervisionFailure
from deployd.lease import Lease, probe_process
from deployd.manager import ManagerContext, create_manager_app


@pytest.fixture
def ctx(config: Config) -> ManagerContext:
    return ManagerContext(config)


def version_of(slot) -> str:
    return (slot / "VERSION").read_text()


class TestLifespan:
    def test_starts_current_instance(self, ctx: ManagerContext, config: Config, make_app) -> None:
        make_app(config.current_path, "v1")
        with TestClient(create_manager_app(ctx)) as client:
            pid = ctx.supervisor.pid
            assert pid is not None
            assert Lease("manager", config.root).is_owned_by(ctx.pid)
            body = client.get("/status").json()
            assert body["details"]["supervised_pid"] == pid
            assert body["details"]["child"]["state"] == "running"
            assert body["details"]["slots"]["current"]["exists"] is True
        assert ctx.supervisor.pid is None
        assert not probe_process(pid)
        assert not (config.root / "manager.pid").exists()

    def test_without_instance(self, ctx: ManagerContext) -> None:
        with TestClient(create_manager_app(ctx)) as client:
            body = client.get("/status").json()
        assert body["details"]["supervised_pid"] is None
        assert body["details"]["child"] is None

    def test_stops_orphaned_instance(
        self, ctx: ManagerContext, config: Config, sleeper, make_app
    ) -> None:
        Lease("instance", config.root).write(sleeper.pid)
        make_app(config.current_path, "v1")
        with TestClient(create_manager_app(ctx)):
            assert ctx.supervisor.pid != sleeper.pid
            assert sleeper.poll() is not None


class TestInstanceRoutes:
    """Tests for /start, /stop and /restart."""

    def test_stop_and_start(self, ctx: ManagerContext, config: Config, make_app) -> None:
        make_app(config.current_path, "v1")
        with TestClient(create_manager_app(ctx)) as client:
            first = client.post("/stop").json()
            second = client.post("/stop").json()
            assert first["message"] == "Instance stopped"
            assert second["message"] == "Instance is not running"

            started = client.post("/start").json()
            assert started["message"] == "Instance started"
            again = client.post("/start").json()
            assert "already running" in again["message"]
            assert again["details"]["pid"] == started["details"]["pid"]

    async def test_concurrent_starts_launch_one_instance(
        self, ctx: ManagerContext, config: Config, make_app
    ) -> None:
        make_app(config.current_path, "v1")
        transport = httpx.ASGITransport(app=create_manager_app(ctx))
        try:
            async with httpx.AsyncClient(transport=transport, base_url="http://manager") as client:
                responses = await asyncio.gather(client.post("/start"), client.post("/start"))
            bodies = sorted((r.json() for r in responses), key=lambda body: body["message"])

            assert [body["kind"] for body in bodies] == ["ack", "ack"]
            assert bodies[0]["message"] == f"Instance already running with pid {ctx.supervisor.pid}"
            assert bodies[1]["message"] == "Instance started"
            assert bodies[1]["details"]["pid"] == ctx.supervisor.pid
        finally:
            await ctx.supervisor.stop()

    def test_start_while_stopping(self, ctx: ManagerContext, config: Config, make_app) -> None:
        make_app(config.current_path, "v1")
        ctx.stopping = True
        client = TestClient(create_manager_app(ctx))
        body = client.post("/start").json()
        assert body["kind"] == "error"
        assert "shutting down" in body["message"]
        assert ctx.supervisor.pid is None

    def test_stop_when_idle_holds_back_restarts(self, ctx: ManagerContext) -> None:
        client = TestClient(create_manager_app(ctx))
        body = client.post("/stop").json()
        assert body["message"] == "Instance is not running"
        assert ctx.supervisor.stopped

    def test_restart_in_place(self, ctx: ManagerContext, config: Config, make_app) -> None:
        make_app(config.current_path, "v1")
        with TestClient(create_manager_app(ctx)) as client:
            old_pid = ctx.supervisor.pid
            body = client.post("/restart").json()
            assert body["message"] == "Instance restarted"
            assert body["details"]["pid"] != old_pid
            assert not probe_process(old_pid)

    def test_restart_with_upcoming_swaps(
        self, ctx: ManagerContext, config: Config, make_app
    ) -> None:
        """The old instance is dead before the new one runs from current."""
        make_app(config.current_path, "v1")
        make_app(config.upcoming_path, "v2")
        with TestClient(create_manager_app(ctx)) as client:
            old_pid = ctx.supervisor.pid
            body = client.post(
                "/restart", json={"upcomingPath": str(config.upcoming_path)}
            ).json()

            assert body["kind"] == "ack", body
            assert body["message"] == "Instance replaced"
            assert body["details"]["pid"] != old_pid
            assert body["details"]["slot"] == str(config.current_path)
            assert not probe_process(old_pid)
            assert version_of(config.current_path) == "v2"
            assert not config.upcoming_path.exists()
            assert not config.current_path.with_name("current-instance.replaced").exists()

    def test_swap_rolls_back_when_old_instance_survives(
        self, ctx: ManagerContext, config: Config, make_app, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        make_app(config.current_path, "v1")
        make_app(config.upcoming_path, "v2")
        stop = ctx.supervisor.stop

        async def refuse(mandatory: bool = False):
            if mandatory:
                raise SupervisionFailure("Instance did not stop", ctx.supervisor.pid)
            return await stop(mandatory)

        with TestClient(create_manager_app(ctx)) as client:
            old_pid = ctx.supervisor.pid
            monkeypatch.setattr(ctx.supervisor, "stop", refuse)
            body = client.post(
                "/restart", json={"upcomingPath": str(config.upcoming_path)}
            ).json()

            assert body["kind"] == "error"
            assert body["error"] == "SupervisionFailure"
            assert ctx.supervisor.pid == old_pid
            assert version_of(config.current_path) == "v1"
            assert version_of(config.upcoming_path) == "v2"

    def test_swap_rolls_back_when_new_instance_fails(
        self, ctx: ManagerContext, config: Config, make_app
    ) -> None:
        """A new build that crashes on start is replaced by the previous one."""
        make_app(config.current_path, "v1")
        config.upcoming_path.mkdir()
        (config.upcoming_path / "main.py").write_text("import sys; sys.exit(1)")
        with TestClient(create_manager_app(ctx)) as client:
            body = client.post(
                "/restart", json={"upcomingPath": str(config.upcoming_path)}
            ).json()

            assert body["kind"] == "error"
            assert version_of(config.current_path) == "v1"
            assert (config.upcoming_path / "main.py").exists()
            assert ctx.supervisor.is_running()

    def test_restart_missing_upcoming(self, ctx: ManagerContext, config: Config) -> None:
        with TestClient(create_manager_app(ctx), raise_server_exceptions=False) as client:
            response = client.post(
                "/restart", json={"upcomingPath": str(config.upcoming_path)}
            )
        assert response.status_code == 500
        assert response.json()["error"] == "FileNotFoundError"

    def test_foreign_owner_refuses_mutation(
        self, ctx: ManagerContext, config: Config, sleeper
    ) -> None:
        with TestClient(create_manager_app(ctx)) as client:
            Lease("manager", config.root).write(sleeper.pid)
            body = client.post("/start").json()
            assert body["kind"] == "error"
            assert body["error"] == "LeaseIntegrityError"
            assert ctx.terminating
        assert Lease("manager", config.root).read().pid == sleeper.pid

    def test_shutdown_stops_instance(self, ctx: ManagerContext, config: Config, make_app) -> None:
        make_app(config.current_path, "v1")
        with TestClient(create_manager_app(ctx)) as client:
            pid = ctx.supervisor.pid
            body = client.post("/shutdown").json()
            assert body["kind"] == "ack"
            assert not probe_process(pid)
            assert "already" in client.post("/terminate").json()["message"]
