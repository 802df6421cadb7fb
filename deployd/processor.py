"""
Processor daemon.

Receives deployment requests, runs one pipeline at a time and keeps the run
history. A newer request preempts the running one: it publishes its id as
`superseding_id`, the running pipeline notices at its next step boundary and
aborts, and the newer run takes over once the older one has stopped.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Awaitable, Callable

from fastapi import FastAPI

from .config import Config
from .control import (
    AckResponse,
    ControlClient,
    DaemonContext,
    DeployRequest,
    ErrorResponse,
    create_app,
    serve,
)
from .errors import ControlPlaneUnreachable, DeploydError, StepFailure
from .launcher import ensure_daemon
from .models import PipelineRecord, initialize_db
from .pipeline import Pipeline, PipelineRun, PipelineState, new_run_id
from .vcs import GitVersionControl, VersionControl

logger = logging.getLogger(__name__)

PREEMPT_POLL = 0.1
RECENT_RUNS = 10


class ProcessorContext(DaemonContext):
    """Processor state: the running and superseding pipeline runs."""

    def __init__(
        self,
        config: Config,
        vcs_factory: Callable[[Path], VersionControl] | None = None,
        request_swap: Callable[[Path], Awaitable[None]] | None = None,
    ):
        super().__init__("processor", config)
        self.vcs_factory = vcs_factory or (
            lambda path: GitVersionControl(path, timeout=config.build_timeout)
        )
        self.request_swap = request_swap or self.swap_via_manager
        self.running_id: str | None = None
        self.superseding_id: str | None = None
        self.runs: dict[str, PipelineRun] = {}
        self.tasks: set[asyncio.Task] = set()
        initialize_db(config.db_path)

    def superseded_by(self, run: PipelineRun) -> str | None:
        if self.superseding_id and self.superseding_id != run.id:
            return self.superseding_id
        return None

    def record_state(self, run: PipelineRun):
        """Persist the run after every state change."""
        PipelineRecord.insert(
            id=run.id,
            source_ref=run.source_ref,
            repository_path=run.repository_path,
            state=run.state.value,
            step=run.state.value if not run.is_terminal else None,
            error=run.error,
            commit_hash=run.commit.hash if run.commit else None,
            commit_message=run.commit.message if run.commit else None,
            started_at=run.started_at,
            finished_at=run.finished_at,
        ).on_conflict_replace().execute()

    def create_pipeline(self, run: PipelineRun) -> Pipeline:
        repository = Path(run.repository_path) if run.repository_path else self.config.repository_path
        return Pipeline(
            self.config,
            self.vcs_factory(repository),
            self.request_swap,
            is_superseded=self.superseded_by,
            on_state=self.record_state,
        )

    def _finish_early(self, run: PipelineRun, state: PipelineState, error: str) -> PipelineRun:
        run.state = state
        run.error = error
        run.finished_at = datetime.now()
        self.record_state(run)
        return run

    async def submit(self, run: PipelineRun) -> PipelineRun:
        """Run a pipeline, preempting the one in progress."""
        self.runs[run.id] = run
        self.record_state(run)

        if self.running_id is not None:
            logger.info(f"Pipeline {run.id} - Waiting for pipeline {self.running_id} to stop")
            self.superseding_id = run.id
            loop = asyncio.get_running_loop()
            deadline = loop.time() + self.config.preempt_timeout
            while self.running_id is not None:
                if self.superseding_id != run.id:
                    logger.warning(
                        f"Pipeline {run.id} - Superseded by {self.superseding_id} while waiting"
                    )
                    return self._finish_early(
                        run, PipelineState.ABORTED, f"Superseded by {self.superseding_id}"
                    )
                if loop.time() >= deadline:
                    if self.superseding_id == run.id:
                        self.superseding_id = None
                    message = (
                        f"Pipeline {self.running_id} still running after "
                        f"{self.config.preempt_timeout:.0f}s"
                    )
                    logger.error(f"Pipeline {run.id} - {message}")
                    return self._finish_early(run, PipelineState.FAILED, message)
                try:
                    await asyncio.sleep(PREEMPT_POLL)
                except asyncio.CancelledError:
                    if self.superseding_id == run.id:
                        self.superseding_id = None
                    self._finish_early(run, PipelineState.ABORTED, "Cancelled while waiting")
                    raise

            if self.superseding_id not in (None, run.id):
                return self._finish_early(
                    run, PipelineState.ABORTED, f"Superseded by {self.superseding_id}"
                )

        self.running_id = run.id
        self.superseding_id = None
        try:
            await self.create_pipeline(run).execute(run)
        finally:
            self.running_id = None
        return run

    def schedule(self, run: PipelineRun) -> asyncio.Task:
        task = asyncio.create_task(self.submit(run))
        self.tasks.add(task)
        task.add_done_callback(self.tasks.discard)
        return task

    async def cancel_tasks(self):
        """Cancel pipeline tasks still alive and wait for them to clean up."""
        tasks = list(self.tasks)
        if not tasks:
            return
        logger.warning(f"Cancelling {len(tasks)} pipeline task(s)")
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    def abort_running(self, reason: str) -> str | None:
        """Ask the running pipeline to stop at its next step boundary."""
        if self.running_id is None:
            return None
        self.superseding_id = f"{reason}-{new_run_id()}"
        logger.info(f"Abort of pipeline {self.running_id} requested ({reason})")
        return self.running_id

    async def stop_managed(self):
        if self.abort_running("shutdown") is None:
            return
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.command_timeout
        while self.running_id is not None and loop.time() < deadline:
            await asyncio.sleep(PREEMPT_POLL)
        if self.running_id is not None:
            logger.warning(f"Pipeline {self.running_id} did not stop before shutdown")

    async def swap_via_manager(self, upcoming: Path):
        """Ask the Manager to swap in `upcoming`, starting it when offline."""
        client = ControlClient("manager", self.config)
        try:
            response = await client.restart(upcoming)
        except ControlPlaneUnreachable:
            logger.warning("Manager is not running, starting it before the swap")
            await ensure_daemon("manager", self.config)
            response = await client.restart(upcoming)
        if isinstance(response, ErrorResponse):
            raise StepFailure("swap", response.message, path=str(upcoming))
        logger.info(f"Manager answered: {response.message}")

    async def details(self) -> dict:
        running = self.runs.get(self.running_id) if self.running_id else None
        return {
            "running_id": self.running_id,
            "superseding_id": self.superseding_id,
            "running": running.to_dict() if running else None,
            "runs": [record.to_dict() for record in PipelineRecord.recent(RECENT_RUNS)],
        }


def create_processor_app(ctx: ProcessorContext) -> FastAPI:
    """Build the Processor control plane."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Starting processor {ctx.pid}...")
        await ctx.lease.wait_and_acquire(timeout=ctx.config.lease_timeout)
        yield
        logger.info("Shutting down processor...")
        await ctx.stop_managed()
        await ctx.cancel_tasks()
        ctx.release_lease()

    app = create_app(ctx, lifespan=lifespan)

    @app.post("/deploy", response_model=AckResponse)
    async def deploy(data: DeployRequest):
        """Queue a pipeline run. Answers before the run starts."""
        await ctx.ensure_ownership()
        if ctx.stopping:
            raise DeploydError("Processor is shutting down")
        run_id = data.id or new_run_id()
        if run_id in ctx.runs:
            return AckResponse(action="deploy", message=f"Pipeline {run_id} already submitted",
                               details={"id": run_id})
        run = PipelineRun(id=run_id, source_ref=data.ref, repository_path=data.repositoryPath)
        ctx.schedule(run)
        logger.info(f"Pipeline {run.id} - Queued for {data.ref or 'HEAD'}")
        return AckResponse(action="deploy", message="Pipeline queued", details={"id": run.id})

    @app.post("/stop", response_model=AckResponse)
    async def stop_pipeline():
        """Abort the running pipeline. No-op when none is running."""
        await ctx.ensure_ownership()
        aborted = ctx.abort_running("stop")
        if aborted is None:
            return AckResponse(action="stop", message="No pipeline is running")
        return AckResponse(action="stop", message=f"Abort of pipeline {aborted} requested",
                           details={"id": aborted})

    return app


def run_processor(config: Config):
    """Serve the Processor until it is asked to exit."""
    ctx = ProcessorContext(config)
    app = create_processor_app(ctx)
    asyncio.run(serve(app, ctx))
