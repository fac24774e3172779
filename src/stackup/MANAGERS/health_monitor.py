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
Health monitoring for services: Docker-style health check commands with a
start period, an interval, a per-probe timeout and a retry threshold.

Each watched service gets its own task, so a slow probe on one service never
delays another. The task is the only writer of that service's health; other
components read the published snapshot or consume the event stream.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Iterator, Optional, Tuple

from ..errors import ProbeError
from ..MODELS.service_definition import HealthCheck
from ..RUNNERS.substrate import ExecutionSubstrate, ProcessHandle

logger = logging.getLogger(__name__)


class ProbeState(str, Enum):
    """Health status of a service."""

    BOOTING = "booting"
    PROBING = "probing"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


@dataclass(frozen=True)
class ServiceHealth:
    """Health information for a service, as of the last probe."""

    state: ProbeState = ProbeState.BOOTING
    failing_streak: int = 0
    failures_in_grace: int = 0
    probes: int = 0
    last_check: Optional[str] = None
    last_output: str = ""


@dataclass(frozen=True)
class HealthEvent:
    """A change of a service's health state."""

    service: str
    state: ProbeState
    output: str = ""
    timestamp: Optional[str] = None


class ProbeTracker:
    """
    The health state machine for one service, independent of any clock.

    Probe results are fed in with their offset from the service start. While
    the offset is inside the start period, failures are counted but do not
    change the state. After that, ``retries`` consecutive failures make the
    service unhealthy. Any success makes it healthy and resets the streak.
    """

    def __init__(self, descriptor: HealthCheck):
        self.descriptor = descriptor
        self.state = ProbeState.BOOTING
        self.failing_streak = 0
        self.failures_in_grace = 0
        self.probes = 0

    def schedule(self) -> Iterator[float]:
        """
        Offsets from service start at which probes run.

        Probes run every interval during the start period. The schedule is
        then re-anchored at the end of the start period, so the first probe
        that can count against the service runs one interval after it.
        """
        interval = self.descriptor.interval
        start_period = self.descriptor.start_period
        k = 1
        while k * interval < start_period:
            yield k * interval
            k += 1
        k = 1
        while True:
            yield start_period + k * interval
            k += 1

    def in_grace(self, offset: float) -> bool:
        return offset < self.descriptor.start_period

    def observe(self, offset: float, success: bool) -> Optional[ProbeState]:
        """
        Records a probe result.

        :param offset: Seconds since the service started when the probe ran.
        :param success: Whether the probe passed.
        :return: The new state if it changed, otherwise None.
        """
        self.probes += 1
        previous = self.state

        if success:
            self.failing_streak = 0
            self.state = ProbeState.HEALTHY
        elif self.in_grace(offset):
            self.failures_in_grace += 1
        else:
            self.failing_streak += 1
            if self.failing_streak >= self.descriptor.retries:
                self.state = ProbeState.UNHEALTHY
            elif self.state == ProbeState.BOOTING:
                self.state = ProbeState.PROBING

        return self.state if self.state != previous else None


_CLOSED = object()


class ReadinessStream:
    """
    Async iterator over the health events of one watched service.
    Iteration ends when the watch is cancelled.
    """

    def __init__(self, service: str):
        self.service = service
        self._queue: asyncio.Queue = asyncio.Queue()

    def publish(self, event: HealthEvent):
        self._queue.put_nowait(event)

    def fail(self, error: BaseException):
        self._queue.put_nowait(error)

    def close(self):
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> "ReadinessStream":
        return self

    async def __anext__(self) -> HealthEvent:
        item = await self._queue.get()
        if item is _CLOSED:
            # Keep the stream closed for any later reader
            self._queue.put_nowait(_CLOSED)
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            raise item
        return item


class HealthMonitor:
    """
    Runs health checks for services through the execution substrate.
    """

    def __init__(self, substrate: ExecutionSubstrate):
        """
        Initializes the health monitor.

        :param substrate: Runs the probe commands.
        """
        self.substrate = substrate
        self._health: Dict[str, ServiceHealth] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._streams: Dict[str, ReadinessStream] = {}

    def watch(self, name: str, handle: ProcessHandle, descriptor: HealthCheck) -> ReadinessStream:
        """
        Starts probing a service. Any previous watch of the same service is
        cancelled first.

        :param name: Service name.
        :param handle: The running service.
        :param descriptor: The health check to run.
        :return: A stream of the service's health changes.
        """
        self.unwatch(name)
        stream = ReadinessStream(name)
        self._health[name] = ServiceHealth()
        task = asyncio.get_running_loop().create_task(
            self._watch_loop(name, handle, descriptor, stream),
            name=f"health:{name}",
        )
        task.add_done_callback(lambda t: self._on_done(stream, t))
        self._tasks[name] = task
        self._streams[name] = stream
        return stream

    def unwatch(self, name: str):
        """
        Stops probing a service. The last snapshot stays readable.
        """
        task = self._tasks.pop(name, None)
        if task is not None:
            task.cancel()
        stream = self._streams.pop(name, None)
        if stream is not None:
            stream.close()

    def get_health(self, service_name: str) -> ServiceHealth:
        """
        Get the health status of a service.

        Args:
            service_name: Name of the service.

        Returns:
            ServiceHealth snapshot.
        """
        return self._health.get(service_name, ServiceHealth())

    async def stop(self):
        """Cancels every watch and waits for the tasks to finish."""
        tasks = list(self._tasks.values())
        for name in list(self._tasks):
            self.unwatch(name)
        await asyncio.gather(*tasks, return_exceptions=True)

    async def _watch_loop(self, name: str, handle: ProcessHandle,
                          descriptor: HealthCheck, stream: ReadinessStream):
        loop = asyncio.get_running_loop()
        started = loop.time()
        tracker = ProbeTracker(descriptor)

        for offset in tracker.schedule():
            delay = started + offset - loop.time()
            if delay > 0:
                await asyncio.sleep(delay)

            # Probes that overran their interval delay this one; grace goes by real time
            ran_at = max(offset, loop.time() - started)
            success, output = await self._run_health_check(name, handle, descriptor)
            changed = tracker.observe(ran_at, success)
            now = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")

            self._health[name] = ServiceHealth(
                state=tracker.state,
                failing_streak=tracker.failing_streak,
                failures_in_grace=tracker.failures_in_grace,
                probes=tracker.probes,
                last_check=now,
                last_output=output,
            )

            if not success:
                logger.debug("[%s] Health check failed (streak %d): %s",
                             name, tracker.failing_streak, output)
            if changed is not None:
                logger.info("[%s] Health: %s", name, changed.value)
                stream.publish(HealthEvent(name, changed, output, now))

    async def _run_health_check(self, name: str, handle: ProcessHandle,
                                descriptor: HealthCheck) -> Tuple[bool, str]:
        """
        Runs one probe, bounded by the descriptor's timeout.

        Returns:
            Whether the probe passed, and its output or error.
        """
        try:
            result = await asyncio.wait_for(
                self.substrate.probe(handle, descriptor.test, descriptor.timeout),
                timeout=descriptor.timeout,
            )
        except asyncio.TimeoutError:
            return False, f"Health check timed out after {descriptor.timeout}s"
        except ProbeError as e:
            return False, str(e)
        if result.success:
            return True, result.output
        return False, result.output or f"Exit code: {result.exit_code}"

    @staticmethod
    def _on_done(stream: ReadinessStream, task: asyncio.Task):
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("[%s] Health monitoring stopped: %s", stream.service, error)
            stream.fail(error)
