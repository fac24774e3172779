# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Orchestration for multiple services, managing dependencies, health and restarts.

Every service is supervised by its own task. A service waits until each of
its dependencies is ready, acquires its networks and volumes, and is then
launched. Services with a health check are ready once healthy; services
without one are ready as soon as they run.
"""
import asyncio
import logging
import os
from enum import Enum
from typing import Callable, Dict, Optional

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    stop_never,
    wait_exponential,
)

from ..errors import DependencyTimeout, LaunchError
from ..MODELS.orchestration_config import OrchestrationConfig
from ..MODELS.runtime_state import RunOutcome, RuntimeState, is_valid_transition
from ..MODELS.service_definition import RestartPolicyCondition, ServiceDefinition
from ..MODELS.settings import OrchestratorSettings
from ..RUNNERS.dependency_resolver import DependencyResolver, ServiceGraph
from ..RUNNERS.substrate import ExecutionSubstrate, ProcessHandle
from .health_monitor import HealthMonitor, ProbeState
from .network_manager import NetworkManager
from .resource_manager import ResourceManager
from .state_store import StateStore
from .volume_manager import VolumeManager

logger = logging.getLogger(__name__)

TransitionCallback = Callable[[str, RuntimeState, RuntimeState], None]


class ServiceUnhealthy(Exception):
    """A running service was declared unhealthy and should be restarted."""

    def __init__(self, service: str):
        self.service = service
        super().__init__(f"Service '{service}' is unhealthy")


class _Settled(str, Enum):
    """How a service's startup ended, as far as up() is concerned."""

    READY = "ready"
    FAILED = "failed"
    UNHEALTHY = "unhealthy"
    TIMEOUT = "timeout"
    STOPPED = "stopped"


class ServiceOrchestrator:
    """
    Orchestrates multiple services based on their dependencies.
    """
    def __init__(self,
                 graph: ServiceGraph,
                 resources: ResourceManager,
                 health_monitor: HealthMonitor,
                 substrate: ExecutionSubstrate,
                 settings: Optional[OrchestratorSettings] = None,
                 on_transition: Optional[TransitionCallback] = None,
                 state_store: Optional[StateStore] = None):
        """
        Initializes the orchestrator.

        :param graph: The validated service graph.
        :param resources: Provides networks and volumes.
        :param health_monitor: Decides when services are healthy.
        :param substrate: Runs the services.
        :param settings: Timeouts and restart limits.
        :param on_transition: Called with (service, old, new) on every state change.
        :param state_store: Where states are persisted, if anywhere.
        """
        self.graph = graph
        self.resources = resources
        self.health_monitor = health_monitor
        self.substrate = substrate
        self.settings = settings or OrchestratorSettings()
        self.on_transition = on_transition
        self.state_store = state_store

        self.states: Dict[str, RuntimeState] = {name: RuntimeState.PENDING for name in graph}
        self.restarts: Dict[str, int] = {name: 0 for name in graph}
        self.handles: Dict[str, ProcessHandle] = {}
        self.timeouts: Dict[str, DependencyTimeout] = {}

        self._tasks: Dict[str, asyncio.Task] = {}
        self._ready: Dict[str, asyncio.Event] = {name: asyncio.Event() for name in graph}
        self._settled: Dict[str, asyncio.Future] = {}
        self._settled_as: Dict[str, _Settled] = {}
        self._stop_requested = asyncio.Event()

    @classmethod
    def from_config(cls,
                    config: OrchestrationConfig,
                    substrate: ExecutionSubstrate,
                    settings: Optional[OrchestratorSettings] = None,
                    base_dir: str = ".",
                    volume_manager: Optional[VolumeManager] = None,
                    **kwargs) -> "ServiceOrchestrator":
        """
        Builds an orchestrator with the default managers for a resolved stack.

        :raises ConfigurationError: If the service graph is invalid.
        """
        settings = settings or OrchestratorSettings()
        graph = DependencyResolver().build(config.services.values())
        state_root = os.path.join(base_dir, settings.state_dir)
        network_manager = NetworkManager(os.path.join(state_root, "networks.json"))
        if volume_manager is None:
            volume_manager = VolumeManager(base_dir, os.path.join(settings.state_dir, "volumes"))
        resources = ResourceManager(config, network_manager, volume_manager)
        return cls(graph, resources, HealthMonitor(substrate), substrate, settings, **kwargs)

    def status(self) -> Dict[str, RuntimeState]:
        """
        Returns the state of all services, in startup order.
        """
        return {name: self.states[name] for name in self.graph}

    def request_stop(self):
        """
        Asks a running up() or run() to wind down. Safe to call from a
        signal handler running in the event loop.
        """
        self._stop_requested.set()

    async def up(self) -> RunOutcome:
        """
        Starts all services and waits until each one is ready or has
        definitively failed to become ready.

        :return: How startup ended.
        :raises ResourceError: If a network or volume could not be created.
            Everything started so far is stopped first.
        """
        loop = asyncio.get_running_loop()
        order = self.graph.startup_order()
        logger.info("Starting services in order: %s", ", ".join(order))

        for name in order:
            self._settled[name] = loop.create_future()
        for name in order:
            self._tasks[name] = loop.create_task(self._supervise(name), name=f"service:{name}")

        stop_waiter = loop.create_task(self._stop_requested.wait())
        try:
            pending = set(self._settled.values())
            while pending and not self._stop_requested.is_set():
                done, pending = await asyncio.wait(
                    pending | {stop_waiter}, return_when=asyncio.FIRST_COMPLETED
                )
                pending.discard(stop_waiter)
                for future in done:
                    if future is not stop_waiter and future.exception() is not None:
                        raise future.exception()
        except BaseException:
            await self.down()
            raise
        finally:
            stop_waiter.cancel()

        outcome = self._outcome()
        logger.info("Startup finished: %s", outcome.value)
        if self.state_store is not None:
            self.state_store.record_outcome(outcome.value)
        return outcome

    async def run(self) -> RunOutcome:
        """
        Starts all services, supervises them until a stop is requested, then
        stops them.

        :return: The startup outcome, or STOPPED if stopped during startup.
        """
        try:
            outcome = await self.up()
            if outcome == RunOutcome.SUCCESS:
                await self._stop_requested.wait()
        finally:
            await self.down()
        return outcome

    async def down(self):
        """
        Stops all services in reverse dependency order.
        """
        self._stop_requested.set()
        for name in self.graph.shutdown_order():
            await self._stop_service(name)
        await self.health_monitor.stop()

    def _outcome(self) -> RunOutcome:
        if self._stop_requested.is_set():
            return RunOutcome.STOPPED
        if self.timeouts:
            return RunOutcome.DEPENDENCY_TIMEOUT
        if any(s in (_Settled.FAILED, _Settled.UNHEALTHY) for s in self._settled_as.values()):
            return RunOutcome.LAUNCH_FAILURE
        return RunOutcome.SUCCESS

    async def _supervise(self, name: str):
        """
        The whole life of one service: gating, resources, launch and restarts.
        """
        spec = self.graph[name]
        try:
            await self._wait_for_dependencies(name)
            await self.resources.acquire(name, self.resources.resources_for(spec))
            await self._run_with_restarts(name, spec)
        except DependencyTimeout as e:
            logger.error("%s", e)
            self.timeouts[name] = e
            self._settle(name, _Settled.TIMEOUT)
        except LaunchError as e:
            logger.error("%s (giving up after %d restarts)", e, self.restarts[name])
            self._settle(name, _Settled.FAILED)
        except asyncio.CancelledError:
            self._settle(name, _Settled.STOPPED)
            raise
        except Exception as e:
            # ResourceError and anything unexpected end the whole run
            logger.error("[%s] %s", name, e)
            if is_valid_transition(self.states[name], RuntimeState.FAILED) \
                    and self.states[name] != RuntimeState.STOPPING:
                self._transition(name, RuntimeState.FAILED)
            future = self._settled[name]
            if not future.done():
                future.set_exception(e)
            else:
                raise
        finally:
            self.resources.release(name)

    async def _wait_for_dependencies(self, name: str):
        deps = self.graph.dependencies(name)
        if not deps:
            return
        logger.debug("[%s] Waiting for %s", name, ", ".join(deps))
        try:
            await asyncio.wait_for(
                asyncio.gather(*(self._ready[d].wait() for d in deps)),
                timeout=self.settings.dependency_timeout,
            )
        except asyncio.TimeoutError:
            waiting = [d for d in deps if not self._ready[d].is_set()]
            raise DependencyTimeout(name, waiting, self.settings.dependency_timeout) from None

    def _max_attempts(self, spec: ServiceDefinition) -> Optional[int]:
        """Launch attempts allowed by a restart policy; None means unbounded."""
        policy = spec.restart_policy
        if policy.condition == RestartPolicyCondition.NEVER:
            return 1
        if policy.condition == RestartPolicyCondition.UNLESS_STOPPED:
            return None
        retries = policy.max_retries if policy.max_retries is not None else self.settings.max_restarts
        return 1 + retries

    async def _run_with_restarts(self, name: str, spec: ServiceDefinition):
        max_attempts = self._max_attempts(spec)
        retrying = AsyncRetrying(
            stop=stop_never if max_attempts is None else stop_after_attempt(max_attempts),
            wait=wait_exponential(multiplier=self.settings.backoff_initial,
                                  max=self.settings.backoff_max),
            retry=retry_if_exception_type((LaunchError, ServiceUnhealthy)),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                await self._run_instance(name, spec, attempt.retry_state.attempt_number, max_attempts)

    async def _run_instance(self, name: str, spec: ServiceDefinition,
                            attempt_number: int, max_attempts: Optional[int]):
        """
        One launch of a service, supervised until it exits or turns unhealthy.

        :raises LaunchError: If the launch failed or the process died.
        :raises ServiceUnhealthy: If it became unhealthy with restarts left.
        """
        self.restarts[name] = attempt_number - 1
        self._ready[name].clear()
        self._transition(name, RuntimeState.STARTING)

        try:
            handle = await self.substrate.launch(spec, self.resources.launch_context(spec))
        except LaunchError:
            self._transition(name, RuntimeState.FAILED)
            raise
        self.handles[name] = handle
        self._transition(name, RuntimeState.RUNNING)

        if not spec.has_health_check:
            self._mark_ready(name)
            exit_code = await self.substrate.wait(handle)
            await self._handle_exit(name, spec, handle, exit_code)
            return

        restarts_left = max_attempts is None or attempt_number < max_attempts
        self._transition(name, RuntimeState.HEALTH_CHECKING)
        stream = self.health_monitor.watch(name, handle, spec.health_check)
        try:
            async for event in stream:
                if event.state == ProbeState.HEALTHY:
                    self._transition(name, RuntimeState.HEALTHY)
                    self._mark_ready(name)
                elif event.state == ProbeState.UNHEALTHY:
                    self._ready[name].clear()
                    self._transition(name, RuntimeState.UNHEALTHY)
                    if restarts_left:
                        await self._stop_handle(name)
                        raise ServiceUnhealthy(name)
                    # Out of restarts: stay up, it may still recover
                    self._settle(name, _Settled.UNHEALTHY)
        finally:
            self.health_monitor.unwatch(name)

    async def _handle_exit(self, name: str, spec: ServiceDefinition,
                           handle: ProcessHandle, exit_code: int):
        await self._stop_handle(name)
        if exit_code == 0 and spec.restart_policy.condition != RestartPolicyCondition.UNLESS_STOPPED:
            logger.info("[%s] Exited with code 0", name)
            self._transition(name, RuntimeState.STOPPING)
            self._transition(name, RuntimeState.STOPPED)
            return
        self._transition(name, RuntimeState.FAILED)
        raise LaunchError(name, f"exited with code {exit_code}")

    async def _stop_handle(self, name: str):
        handle = self.handles.pop(name, None)
        if handle is not None:
            await self.substrate.stop(handle)

    async def _stop_service(self, name: str):
        if self.states[name] == RuntimeState.STOPPED:
            return
        logger.info("Stopping service: %s...", name)
        self._transition(name, RuntimeState.STOPPING)
        task = self._tasks.get(name)
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        await self._stop_handle(name)
        self._transition(name, RuntimeState.STOPPED)

    def _mark_ready(self, name: str):
        self._ready[name].set()
        self._settle(name, _Settled.READY)

    def _settle(self, name: str, how: _Settled):
        future = self._settled.get(name)
        if future is not None and not future.done():
            future.set_result(how)
            self._settled_as[name] = how

    def _transition(self, name: str, new: RuntimeState):
        """
        Moves a service to a new state, then logs, persists and reports it.

        :raises RuntimeError: If the state machine does not allow the move.
        """
        current = self.states[name]
        if current == new:
            return
        if not is_valid_transition(current, new):
            raise RuntimeError(f"Invalid transition for {name}: {current.value} -> {new.value}")

        self.states[name] = new
        logger.info("[%s] %s -> %s", name, current.value, new.value)

        if self.state_store is not None:
            handle = self.handles.get(name)
            self.state_store.record_service(
                name, new.value,
                pid=handle.pid if handle else None,
                restarts=self.restarts[name],
            )
        if self.on_transition is not None:
            self.on_transition(name, current, new)
