"""
Build orchestrator: drives one build job from created to a terminal state.

Per job:
1. Preflight   - ping the backend; unreachable -> failed, nothing created
2. Provision   - create the container with the workspace bound as output
3. Start       - start it; the job becomes running
4. Observe     - relay logs and wait for exit concurrently, within the budget
5. Finalize    - exit code 0 -> succeeded, anything else -> failed
Teardown (stop + remove) runs exactly once on every path after preflight and
never changes the outcome already recorded.

Blocking backend calls run on a dedicated thread pool sized for the
admission gate, so a slow build never blocks another one or the event loop.
"""
import asyncio
import functools
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Optional

from appbuilder.core.backend import (
    ContainerSpec,
    ExecutionBackend,
    build_environment,
    container_name_for,
)
from appbuilder.core.config import ServiceConfig
from appbuilder.core.errors import (
    BackendError,
    BackendUnavailableError,
    BuildNotFoundError,
    ProvisioningError,
)
from appbuilder.core.jobs import BuildJob, BuildStore
from appbuilder.core.log_relay import LogRelay
from appbuilder.core.metrics import metrics
from appbuilder.core.request_context import set_build_id
from appbuilder.core.workspace import WorkspaceAllocator
from appbuilder.schemas.build import BuildState, ConvertRequest

logger = logging.getLogger(__name__)

# Seconds to wait for exit after killing a container that ran over budget
KILL_GRACE_S = 30

# Seconds to wait for the log stream to end once the container has exited
LOG_DRAIN_TIMEOUT_S = 60

CANCELLED_ERROR = "Build cancelled"
LOG_INCOMPLETE_NOTE = "log stream still open at finalize; build log may be incomplete"


class BuildOrchestrator:
    """Runs build jobs in isolated containers."""

    def __init__(
        self,
        backend: ExecutionBackend,
        store: BuildStore,
        allocator: WorkspaceAllocator,
        config: ServiceConfig,
    ):
        self.backend = backend
        self.store = store
        self.allocator = allocator
        self.config = config
        # Admission gate: excess jobs wait here in the created state
        self._gate = asyncio.Semaphore(config.max_concurrent_builds)
        # Two blocking calls per running job (wait + log stream) plus control calls
        self._executor = ThreadPoolExecutor(
            max_workers=config.max_concurrent_builds * 3 + 4,
            thread_name_prefix="appbuilder-backend",
        )
        self._active: set[str] = set()

    async def _call(self, fn: Callable[..., Any], *args: Any) -> Any:
        """Run a blocking backend call on the orchestrator's pool."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, functools.partial(fn, *args))

    def shutdown(self) -> None:
        """Release the thread pool (does not wait for running builds)."""
        self._executor.shutdown(wait=False, cancel_futures=True)

    # =========================================================================
    # Submission
    # =========================================================================

    def submit(self, request: ConvertRequest) -> BuildJob:
        """
        Allocate a build id and workspace and record the job as created.

        Raises:
            WorkspaceError: If the workspace cannot be created
        """
        build_id, workspace = self.allocator.allocate()
        return self.store.create(
            build_id=build_id,
            source_url=request.url.strip(),
            app_name=request.app_name.strip(),
            app_config=request.app_config_payload(),
            workspace_path=workspace,
            log_path=self.allocator.log_path_for(build_id),
        )

    async def convert(self, request: ConvertRequest) -> BuildJob:
        """Submit and run to completion."""
        job = self.submit(request)
        return await self.run(job.id)

    async def run(self, build_id: str) -> BuildJob:
        """Run a created job once a slot in the admission gate is free."""
        try:
            async with self._gate:
                return await self.run_job(build_id)
        except asyncio.CancelledError:
            # Also covers jobs cancelled while still waiting at the gate
            self.store.fail_if_open(build_id, CANCELLED_ERROR)
            raise

    # =========================================================================
    # Job execution
    # =========================================================================

    def _container_spec(self, job: BuildJob) -> ContainerSpec:
        return ContainerSpec(
            build_id=job.id,
            image=self.config.builder_image,
            command=self.config.builder_cmd,
            workspace=job.workspace_path,
            output_mount=self.config.output_mount,
            environment=build_environment(job.id, job.source_url, job.app_name, job.app_config),
        )

    async def run_job(self, build_id: str) -> BuildJob:
        """
        Drive a created job to succeeded or failed.

        Never raises for backend, provisioning, execution or I/O failures;
        they are recorded on the job instead.

        Raises:
            BuildNotFoundError: If no record exists for build_id
        """
        job = self.store.require(build_id)
        set_build_id(build_id)
        extra = {"build_id": build_id}
        logger.info(f"build_start build_id={build_id}", extra=extra)

        try:
            await self._call(self.backend.ping)
        except BackendUnavailableError as e:
            logger.error(f"backend_unavailable build_id={build_id} error={e}", extra=extra)
            metrics.inc("backend_unavailable_total")
            return self.store.fail(build_id, f"Backend unavailable: {e}")

        self._active.add(build_id)
        try:
            await self._execute(job)
        except asyncio.CancelledError:
            logger.warning(f"build_cancelled build_id={build_id}", extra=extra)
            self.store.fail_if_open(build_id, CANCELLED_ERROR)
            raise
        except BackendError as e:
            logger.error(f"build_backend_error build_id={build_id} error={e}", extra=extra)
            self.store.fail_if_open(build_id, str(e))
        except OSError as e:
            logger.error(f"build_io_error build_id={build_id} error_type={type(e).__name__}", extra=extra)
            self.store.fail_if_open(build_id, f"I/O failure: {e.strerror or type(e).__name__}")
        except Exception as e:
            logger.exception(f"build_error build_id={build_id}", extra=extra)
            self.store.fail_if_open(build_id, f"Unexpected error: {type(e).__name__}")
        finally:
            await self._teardown(build_id)
            self._active.discard(build_id)

        return self.store.require(build_id)

    async def _execute(self, job: BuildJob) -> None:
        """Provision, start, observe and finalize. Teardown is the caller's."""
        build_id = job.id
        extra = {"build_id": build_id}
        self.store.transition(build_id, BuildState.ENVIRONMENT_STARTING)

        try:
            container_id = await self._call(self.backend.create, self._container_spec(job))
        except ProvisioningError as e:
            logger.error(f"provision_failed build_id={build_id} error={e}", extra=extra)
            self.store.fail(build_id, f"Provisioning failed: {e}")
            return

        self.store.attach_container(build_id, container_id)
        logger.info(
            f"container_created build_id={build_id} container_id={container_id[:12]}",
            extra={"build_id": build_id, "container_id": container_id},
        )

        try:
            await self._call(self.backend.start, container_id)
        except ProvisioningError as e:
            logger.error(f"start_failed build_id={build_id} error={e}", extra=extra)
            self.store.fail(build_id, f"Start failed: {e}")
            return

        self.store.transition(build_id, BuildState.RUNNING)

        exit_code, timed_out, log_complete = await self._observe(job, container_id)

        if timed_out:
            error = f"Build timed out after {self.config.build_timeout_s}s"
        elif exit_code != 0:
            error = f"Build process exited with code {exit_code}"
        else:
            error = None

        if error is None:
            detail = None if log_complete else LOG_INCOMPLETE_NOTE
            self.store.transition(build_id, BuildState.SUCCEEDED, exit_code=0, detail=detail)
        else:
            detail = None if log_complete else f"{error} ({LOG_INCOMPLETE_NOTE})"
            self.store.transition(build_id, BuildState.FAILED, error=error, exit_code=exit_code, detail=detail)

    def _relay_logs(self, relay: LogRelay, container_id: str) -> int:
        return relay.pump(self.backend.stream_logs(container_id))

    async def _observe(self, job: BuildJob, container_id: str) -> tuple[Optional[int], bool, bool]:
        """
        Relay logs and wait for exit. Returns (exit_code, timed_out, log_complete).

        The log stream is drained before returning so the durable log is
        complete when the outcome is recorded. log_complete is False when the
        stream was still open after the drain guard.
        """
        relay = LogRelay(job.id, job.log_path)
        loop = asyncio.get_running_loop()
        relay_future = loop.run_in_executor(self._executor, self._relay_logs, relay, container_id)
        wait_future = loop.run_in_executor(self._executor, self.backend.wait, container_id)

        try:
            exit_code, timed_out = await self._await_exit(job.id, container_id, wait_future)
        except asyncio.CancelledError:
            # Teardown ends the stream; the cancelled task does not wait for it
            raise
        except Exception:
            await self._drain(job.id, relay_future)
            raise

        log_complete = await self._drain(job.id, relay_future)
        return exit_code, timed_out, log_complete

    async def _await_exit(self, build_id: str, container_id: str, wait_future) -> tuple[Optional[int], bool]:
        budget = self.config.build_timeout_s or None
        try:
            return await asyncio.wait_for(asyncio.shield(wait_future), timeout=budget), False
        except asyncio.TimeoutError:
            metrics.inc("builds_timed_out_total")
            logger.warning(
                f"build_timeout build_id={build_id} budget_s={self.config.build_timeout_s}",
                extra={"build_id": build_id},
            )
            return await self._kill_after_timeout(build_id, container_id, wait_future), True

    async def _kill_after_timeout(self, build_id: str, container_id: str, wait_future) -> Optional[int]:
        """Kill an over-budget container and collect its exit code if it comes."""
        try:
            await self._call(self.backend.kill, container_id)
        except BackendError as e:
            logger.warning(f"kill_failed build_id={build_id} error={e}", extra={"build_id": build_id})
        try:
            return await asyncio.wait_for(asyncio.shield(wait_future), timeout=KILL_GRACE_S)
        except asyncio.TimeoutError:
            logger.warning(f"kill_unconfirmed build_id={build_id}", extra={"build_id": build_id})
            return None
        except BackendError:
            return None

    async def _drain(self, build_id: str, relay_future) -> bool:
        """Wait for the log relay to reach end of stream. False if it did not."""
        try:
            await asyncio.wait_for(asyncio.shield(relay_future), timeout=LOG_DRAIN_TIMEOUT_S)
        except asyncio.TimeoutError:
            metrics.inc("log_drain_timeouts_total")
            logger.warning(f"log_drain_timeout build_id={build_id}", extra={"build_id": build_id})
            return False
        return True

    async def _teardown(self, build_id: str) -> None:
        """
        Stop and remove the build's container. Best effort: failures are
        logged and counted, never raised.
        """
        extra = {"build_id": build_id}
        job = self.store.get(build_id)
        container_id = job.container_id if job else None

        if container_id is None:
            # Creation may have failed after the container was registered
            try:
                container_id = await self._call(self.backend.find, container_name_for(build_id))
            except Exception as e:
                logger.warning(f"teardown_lookup_failed build_id={build_id} error={e}", extra=extra)
                metrics.inc("teardown_errors_total")
                return
            if container_id is None:
                logger.info(f"teardown_skipped build_id={build_id} reason=no_container", extra=extra)
                return

        for action_name, action in (("stop", self.backend.stop), ("remove", self.backend.remove)):
            try:
                await self._call(action, container_id)
            except Exception as e:
                logger.warning(
                    f"teardown_{action_name}_failed build_id={build_id} error={e}",
                    extra={"build_id": build_id, "container_id": container_id},
                )
                metrics.inc("teardown_errors_total")

        try:
            self.store.attach_container(build_id, None)
        except BuildNotFoundError:
            pass
        logger.info(f"teardown_done build_id={build_id}", extra=extra)

    # =========================================================================
    # Orphan reaper
    # =========================================================================

    async def reap_orphans(self) -> int:
        """
        Remove managed containers with no live build record.
        Returns number of containers removed.
        """
        try:
            containers = await self._call(self.backend.list_managed)
        except BackendError as e:
            logger.warning(f"reaper_list_failed error={e}")
            return 0

        live = self.store.live_build_ids() | self._active
        reaped = 0

        for container in containers:
            if container.build_id in live:
                continue
            try:
                if container.status == "running":
                    await self._call(self.backend.stop, container.container_id)
                await self._call(self.backend.remove, container.container_id)
                reaped += 1
                logger.info(
                    f"container_reaped build_id={container.build_id} container_id={container.container_id[:12]}",
                    extra={"build_id": container.build_id, "container_id": container.container_id},
                )
            except Exception as e:
                logger.warning(f"reap_failed container_id={container.container_id[:12]} error={e}")

        if reaped > 0:
            metrics.inc("containers_reaped_total", reaped)
        return reaped

    async def reaper_loop(self, interval_s: int) -> None:
        """Orphan sweep at startup, then every interval_s seconds."""
        try:
            while True:
                try:
                    await self.reap_orphans()
                except Exception as e:
                    logger.error(f"reaper_error error_type={type(e).__name__}")
                await asyncio.sleep(interval_s)
        except asyncio.CancelledError:
            logger.info("reaper_stopped")
