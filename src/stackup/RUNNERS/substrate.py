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
The contract between the orchestrator and whatever actually runs workloads.
"""
import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..MODELS.service_definition import ResolvedServiceDefinition


@dataclass
class LaunchContext:
    """
    Resources acquired for a service before launch.

    volume_paths maps a volume's declared name to its host location;
    extra_env carries name-based addresses of network peers.
    """
    project: str
    volume_paths: Dict[str, str] = field(default_factory=dict)
    networks: List[str] = field(default_factory=list)
    extra_env: Dict[str, str] = field(default_factory=dict)


@dataclass
class ProcessHandle:
    """A launched unit of work."""
    service: str
    pid: Optional[int] = None
    started_at: float = 0.0
    # Substrate-private state
    native: Any = None


@dataclass
class ProbeResult:
    """Outcome of running a health probe."""
    exit_code: int
    output: str = ""

    @property
    def success(self) -> bool:
        return self.exit_code == 0


class ExecutionSubstrate(ABC):
    """
    Starts, stops and probes units of work. Image pulling, logging and
    device plumbing are the substrate's own concern.
    """

    @abstractmethod
    async def launch(self, spec: ResolvedServiceDefinition, context: LaunchContext) -> ProcessHandle:
        """
        Starts a service.

        :raises LaunchError: If the service could not be started.
        """

    @abstractmethod
    async def stop(self, handle: ProcessHandle) -> None:
        """Stops a service. Stopping an already exited service is not an error."""

    @abstractmethod
    async def probe(self, handle: ProcessHandle, command: List[str],
                    timeout: Optional[float] = None) -> ProbeResult:
        """
        Runs a health check command against a service.

        :param command: The health check test, in compose form
            (``["CMD", ...]``, ``["CMD-SHELL", "..."]`` or a bare argv).
        :param timeout: A hint for how long the probe may take. The health
            monitor enforces the bound regardless.
        :raises ProbeError: If the probe could not be executed at all.
        """

    async def wait(self, handle: ProcessHandle) -> int:
        """
        Waits for a service to exit and returns its exit code.

        Substrates that cannot observe exits never return; the service is
        then only supervised through its health check.
        """
        await asyncio.Event().wait()
        return 0
