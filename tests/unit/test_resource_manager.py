"""
Unit tests for project-scoped resource lifecycle.
"""
import asyncio
import os
import threading
import time

import pytest

from stackup.errors import ResourceError
from stackup.MANAGERS.network_manager import NetworkManager
from stackup.MANAGERS.resource_manager import NamedResource, ResourceKind, ResourceManager
from stackup.MANAGERS.volume_manager import VolumeManager
from stackup.PARSERS.compose_parser import ComposeParser

STACK = """
name: rag
services:
  qdrant:
    image: qdrant/qdrant
    volumes: ['qdrant_data:/qdrant/storage', 'qdrant_data:/qdrant/storage']
  api:
    image: api
    volumes: ['./src:/app']
  tools:
    image: tools
    network_mode: host
volumes:
  qdrant_data:
  shared:
    external: true
networks:
  outside:
    external: true
"""


class CountingVolumeManager(VolumeManager):
    """Counts creations and makes each one slow enough to overlap."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.created = 0
        self._count_lock = threading.Lock()

    def create_volume(self, name):
        with self._count_lock:
            self.created += 1
        time.sleep(0.05)
        return super().create_volume(name)


@pytest.fixture
def config():
    return ComposeParser().parse_from_string(STACK)


@pytest.fixture
def volumes(tmp_path):
    return CountingVolumeManager(base_dir=str(tmp_path))


@pytest.fixture
def manager(config, volumes):
    return ResourceManager(config, NetworkManager(), volumes)


class TestScoping:

    def test_identity(self):
        assert NamedResource(ResourceKind.VOLUME, "data", "rag").identity == "rag_data"
        assert NamedResource(ResourceKind.VOLUME, "data", "rag", external=True).identity == "data"

    def test_same_name_in_two_projects(self, config, tmp_path):
        vm = VolumeManager(base_dir=str(tmp_path))
        first = ResourceManager(config, NetworkManager(), vm)
        other = ResourceManager(config.model_copy(update={"project_name": "other"}), NetworkManager(), vm)

        async def scenario():
            a = await first.ensure(NamedResource(ResourceKind.VOLUME, "qdrant_data", "rag"))
            b = await other.ensure(NamedResource(ResourceKind.VOLUME, "qdrant_data", "other"))
            return a, b

        a, b = asyncio.run(scenario())
        assert a.location != b.location
        assert os.path.basename(a.location) == "rag_qdrant_data"
        assert os.path.basename(b.location) == "other_qdrant_data"

    def test_resources_for(self, config, manager):
        qdrant = manager.resources_for(config.services["qdrant"])
        assert [(r.kind, r.name) for r in qdrant] == [
            (ResourceKind.NETWORK, "default"),
            (ResourceKind.VOLUME, "qdrant_data"),
        ]
        # Bind mounts are not resources, host-only services join no network
        assert [r.kind for r in manager.resources_for(config.services["api"])] == [ResourceKind.NETWORK]
        assert manager.resources_for(config.services["tools"]) == []


class TestEnsure:

    def test_concurrent_ensure_creates_once(self, manager, volumes):
        resource = NamedResource(ResourceKind.VOLUME, "qdrant_data", "rag")

        async def scenario():
            return await asyncio.gather(*(manager.ensure(resource) for _ in range(10)))

        handles = asyncio.run(scenario())
        assert volumes.created == 1
        assert all(h == handles[0] for h in handles)
        assert os.path.isdir(handles[0].location)

    def test_ensure_is_idempotent_across_calls(self, manager, volumes):
        resource = NamedResource(ResourceKind.VOLUME, "qdrant_data", "rag")

        async def scenario():
            first = await manager.ensure(resource)
            second = await manager.ensure(resource)
            return first, second

        first, second = asyncio.run(scenario())
        assert first is second
        assert volumes.created == 1

    def test_network_is_recorded(self, manager):
        handle = asyncio.run(manager.ensure(NamedResource(ResourceKind.NETWORK, "default", "rag")))
        assert handle.identity == "rag_default"
        assert manager.network_manager.get_network("rag_default") is not None

    def test_missing_external_volume(self, manager):
        with pytest.raises(ResourceError, match="external volume does not exist"):
            asyncio.run(manager.ensure(NamedResource(ResourceKind.VOLUME, "shared", "rag", external=True)))

    def test_missing_external_network(self, manager):
        with pytest.raises(ResourceError, match="external network does not exist"):
            asyncio.run(manager.ensure(NamedResource(ResourceKind.NETWORK, "outside", "rag", external=True)))

    def test_creation_failure_is_resource_error(self, manager, volumes):
        # A file where the volume directory should go
        with open(os.path.join(volumes.volumes_root, "rag_qdrant_data"), "w") as f:
            f.write("x")
        with pytest.raises(ResourceError):
            asyncio.run(manager.ensure(NamedResource(ResourceKind.VOLUME, "qdrant_data", "rag")))


class TestAcquireRelease:

    def test_acquire_and_release(self, config, manager):
        spec = config.services["qdrant"]

        async def scenario():
            handles = await manager.acquire("qdrant", manager.resources_for(spec))
            context = manager.launch_context(spec)
            return handles, context

        handles, context = asyncio.run(scenario())
        assert len(handles) == 2
        assert list(context.volume_paths) == ["qdrant_data"]
        assert context.networks == ["rag_default"]
        assert os.path.basename(context.volume_paths["qdrant_data"]) == "rag_qdrant_data"

        released = manager.release("qdrant")
        assert released == handles
        assert manager.launch_context(spec).volume_paths == {}
        assert manager.launch_context(spec).networks == []
        # Released resources are not destroyed
        assert os.path.isdir(handles[1].location)
        assert manager.network_manager.get_network("rag_default") is not None

    def test_discovery_between_peers(self, config, manager):
        async def scenario():
            await manager.acquire("qdrant", manager.resources_for(config.services["qdrant"]))
            await manager.acquire("api", manager.resources_for(config.services["api"]))
            return manager.launch_context(config.services["api"])

        context = asyncio.run(scenario())
        assert context.extra_env == {"QDRANT_HOST": "127.0.0.1"}

    def test_release_unknown_service(self, manager):
        assert manager.release("nobody") == []
