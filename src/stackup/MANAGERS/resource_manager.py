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
Lifecycle of the shared named resources (networks and volumes) services use.

Resources are scoped to a project, created at most once per identity, and
outlive every service that uses them. Releasing a service's handles never
destroys anything.
"""
import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional

from ..errors import ResourceError
from ..MODELS.orchestration_config import OrchestrationConfig
from ..MODELS.service_definition import ServiceDefinition
from ..RUNNERS.substrate import LaunchContext
from .network_manager import NetworkConfig, NetworkManager
from .volume_manager import VolumeManager

logger = logging.getLogger(__name__)


class ResourceKind(str, Enum):
    NETWORK = "network"
    VOLUME = "volume"


@dataclass(frozen=True)
class NamedResource:
    """A declared resource, before it is scoped to a project."""
    kind: ResourceKind
    name: str
    project: str
    external: bool = False

    @property
    def identity(self) -> str:
        # External resources are shared across projects under their own name
        if self.external:
            return self.name
        return f"{self.project}_{self.name}"


@dataclass(frozen=True)
class ResourceHandle:
    """A created resource. ``location`` is the host path of a volume."""
    resource: NamedResource
    identity: str
    location: Optional[str] = None


class ResourceManager:
    """
    Creates project-scoped networks and volumes on demand and tracks which
    services hold them.
    """
    def __init__(self,
                 config: OrchestrationConfig,
                 network_manager: NetworkManager,
                 volume_manager: VolumeManager):
        """
        Initializes the resource manager.

        :param config: The stack whose resources are managed.
        :param network_manager: Backing store for networks.
        :param volume_manager: Backing store for volumes.
        """
        self.config = config
        self.project = config.project_name
        self.network_manager = network_manager
        self.volume_manager = volume_manager
        self._handles: Dict[str, ResourceHandle] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Dict[str, List[ResourceHandle]] = {}

    def resources_for(self, spec: ServiceDefinition) -> List[NamedResource]:
        """
        The declared resources a service needs: its networks, then the named
        volumes it mounts, each once.
        """
        resources: List[NamedResource] = []
        for network in spec.networks:
            definition = self.config.networks.get(network)
            resources.append(NamedResource(
                ResourceKind.NETWORK, network, self.project,
                external=bool(definition and definition.external),
            ))
        seen = set()
        for mount in spec.volumes:
            if not mount.is_named or mount.source in seen:
                continue
            seen.add(mount.source)
            definition = self.config.volumes.get(mount.source)
            resources.append(NamedResource(
                ResourceKind.VOLUME, mount.source, self.project,
                external=bool(definition and definition.external),
            ))
        return resources

    async def ensure(self, resource: NamedResource) -> ResourceHandle:
        """
        Creates a resource if it does not exist yet.

        Calls for the same identity are serialized: the first caller creates
        the resource, everyone else waits for it and receives the same handle.

        :param resource: The resource to create.
        :return: The handle for the resource.
        :raises ResourceError: If the resource could not be created.
        """
        key = f"{resource.kind.value}:{resource.identity}"
        handle = self._handles.get(key)
        if handle is not None:
            return handle

        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            handle = self._handles.get(key)
            if handle is not None:
                return handle
            try:
                if resource.kind == ResourceKind.NETWORK:
                    handle = self._ensure_network(resource)
                else:
                    handle = await self._ensure_volume(resource)
            except ResourceError:
                raise
            except (OSError, ValueError) as e:
                raise ResourceError(resource.identity, str(e)) from e
            self._handles[key] = handle
            return handle

    async def acquire(self, service: str, resources: List[NamedResource]) -> List[ResourceHandle]:
        """
        Ensures every resource and records the service as holding them.
        Handles are recorded as they are obtained, so a service cancelled
        halfway still releases what it got.

        :param service: The service acquiring the resources.
        :param resources: The resources, usually from resources_for().
        :return: The handles, in the same order.
        """
        held = self._holders.setdefault(service, [])
        handles = []
        for resource in resources:
            handle = await self.ensure(resource)
            if handle not in held:
                held.append(handle)
                if resource.kind == ResourceKind.NETWORK:
                    self.network_manager.connect_service(service, handle.identity)
            handles.append(handle)
        return handles

    def release(self, service: str) -> List[ResourceHandle]:
        """
        Returns the handles held by a service. Networks are left by the
        service; nothing is destroyed.

        :param service: The service releasing its resources.
        :return: The handles that were held.
        """
        handles = self._holders.pop(service, [])
        if handles:
            self.network_manager.disconnect_service(service)
            logger.debug("Released %d resource handles for %s", len(handles), service)
        return handles

    def launch_context(self, spec: ServiceDefinition) -> LaunchContext:
        """
        Collects what the substrate needs from the acquired resources.
        """
        held = self._holders.get(spec.name, [])
        return LaunchContext(
            project=self.project,
            volume_paths={
                h.resource.name: h.location for h in held
                if h.resource.kind == ResourceKind.VOLUME and h.location
            },
            networks=[h.identity for h in held if h.resource.kind == ResourceKind.NETWORK],
            extra_env=self.network_manager.get_service_discovery_env(spec.name),
        )

    def _ensure_network(self, resource: NamedResource) -> ResourceHandle:
        existing = self.network_manager.get_network(resource.identity)
        if existing is None:
            if resource.external:
                raise ResourceError(resource.identity, "external network does not exist")
            definition = self.config.networks.get(resource.name)
            self.network_manager.create_network(NetworkConfig(
                name=resource.identity,
                driver=definition.driver if definition else "bridge",
                labels={"stackup.project": self.project},
            ))
        return ResourceHandle(resource, resource.identity)

    async def _ensure_volume(self, resource: NamedResource) -> ResourceHandle:
        if resource.external:
            volume = self.volume_manager.get_volume(resource.identity)
            if volume is None:
                raise ResourceError(resource.identity, "external volume does not exist")
        else:
            volume = await asyncio.to_thread(self.volume_manager.create_volume, resource.identity)
        return ResourceHandle(resource, resource.identity, location=volume.path)
