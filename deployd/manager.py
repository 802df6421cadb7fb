"""
Manager daemon.

Owns the supervised application instance: starts it from the `current` slot,
restarts it after crashes and performs the directory swap requested by the
Processor once a pipeline has built a new instance.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from fastapi import FastAPI

from .config import Config
from .control import AckResponse, DaemonContext, RestartRequest, create_app, serve
from .errors import DeploydError, SupervisionFailure
from .process import ProcessSupervisor, SupervisedChild
from .slots import SlotLayout, promote_upcoming, remove_tree, rollback_promotion

logger = logging.getLogger(__name__)


class ManagerContext(DaemonContext):
    """Manager state: the supervisor of the single application instance."""

    def __init__(self, config: Config, supervisor: ProcessSupervisor | None = None):
        super().__init__("manager", config)
        self.supervisor = supervisor or ProcessSupervisor(config)
        self.layout = SlotLayout.from_config(config)
        self.swap_lock = asyncio.Lock()

    async def stop_managed(self):
        await self.supervisor.stop()

    async def details(self) -> dict:
        child = self.supervisor.child
        metrics = await asyncio.to_thread(self.supervisor.metrics)
        instance_pid, instance_running = await self.supervisor.lease.status()
        return {
            "supervised_pid": self.supervisor.pid,
            "child": child.to_dict() if child else None,
            "metrics": metrics,
            "instance_lease": {"pid": instance_pid, "running": instance_running},
            "slots": await asyncio.to_thread(self.layout.describe),
        }

    async def swap_and_restart(self, upcoming: Path) -> SupervisedChild:
        """Move `upcoming` into `current`, stop the old child, start the new one.

        The old child must be confirmed dead before the new one starts. If it
        survives the termination ladder the directories are put back.
        """
        aside = await asyncio.to_thread(promote_upcoming, self.layout, upcoming)
        try:
            await self.supervisor.stop(mandatory=True)
        except SupervisionFailure:
            await asyncio.to_thread(rollback_promotion, self.layout, upcoming, aside)
            raise

        try:
            child = await self.supervisor.start(self.layout.current)
        except SupervisionFailure as e:
            logger.error(f"New instance failed to start, restoring the replaced one: {e}")
            await asyncio.to_thread(rollback_promotion, self.layout, upcoming, aside)
            if self.layout.current.is_dir():
                try:
                    await self.supervisor.start(self.layout.current)
                except SupervisionFailure as err:
                    logger.error(f"Restored instance failed to start: {err}")
            raise

        if aside is not None:
            logger.info(f"Removing replaced instance at {aside}")
            await asyncio.to_thread(remove_tree, aside)
        return child


def create_manager_app(ctx: ManagerContext) -> FastAPI:
    """Build the Manager control plane."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Claim the manager lease and bring the instance up."""
        logger.info(f"Starting manager {ctx.pid}...")
        await ctx.lease.wait_and_acquire(timeout=ctx.config.lease_timeout)
        await ctx.supervisor.stop_orphan()

        if ctx.layout.current.is_dir():
            try:
                await ctx.supervisor.start(ctx.layout.current)
            except SupervisionFailure as e:
                logger.error(f"Could not start instance at {ctx.layout.current}: {e}")
        else:
            logger.info(f"No instance at {ctx.layout.current} yet")

        watch_task = asyncio.create_task(ctx.supervisor.watch())

        yield

        logger.info("Shutting down manager...")
        watch_task.cancel()
        await ctx.supervisor.stop()
        ctx.release_lease()

    app = create_app(ctx, lifespan=lifespan)

    @app.post("/start", response_model=AckResponse)
    async def start_instance():
        """Start the current instance if it is not running."""
        await ctx.ensure_ownership()
        if ctx.stopping:
            raise DeploydError("Manager is shutting down")
        async with ctx.swap_lock:
            if ctx.supervisor.pid is not None:
                return AckResponse(
                    action="start",
                    message=f"Instance already running with pid {ctx.supervisor.pid}",
                    details=ctx.supervisor.child.to_dict(),
                )
            child = await ctx.supervisor.start(ctx.layout.current)
        return AckResponse(action="start", message="Instance started", details=child.to_dict())

    @app.post("/restart", response_model=AckResponse)
    async def restart_instance(data: Optional[RestartRequest] = None):
        """Restart the instance, swapping in `upcomingPath` first when given."""
        await ctx.ensure_ownership()
        if ctx.stopping:
            raise DeploydError("Manager is shutting down")
        upcoming = data.upcomingPath if data else None

        async with ctx.swap_lock:
            if upcoming:
                logger.info(f"Replacing instance with {upcoming}")
                child = await ctx.swap_and_restart(Path(upcoming))
                message = "Instance replaced"
            else:
                logger.info(f"Restarting instance at {ctx.layout.current}")
                child = await ctx.supervisor.restart(ctx.layout.current)
                message = "Instance restarted"
        return AckResponse(action="restart", message=message, details=child.to_dict())

    @app.post("/stop", response_model=AckResponse)
    async def stop_instance():
        """Stop the instance. Stopping a stopped instance is a no-op."""
        await ctx.ensure_ownership()
        if ctx.supervisor.pid is None:
            # Also cancels a crash restart waiting out its delay
            await ctx.supervisor.stop()
            return AckResponse(action="stop", message="Instance is not running")
        stage = await ctx.supervisor.stop()
        return AckResponse(action="stop", message="Instance stopped", details={"stage": stage})

    return app


def run_manager(config: Config):
    """Serve the Manager until it is asked to exit."""
    ctx = ManagerContext(config)
    app = create_manager_app(ctx)
    asyncio.run(serve(app, ctx))
