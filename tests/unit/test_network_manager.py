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
Unit tests for the network manager.
"""
import pytest
from stackup.MANAGERS.network_manager import NetworkManager, NetworkConfig


class TestNetworkManager:
    """Tests for NetworkManager."""

    @pytest.fixture
    def mgr(self):
        mgr = NetworkManager()
        mgr.create_network(NetworkConfig(name="proj_default"))
        return mgr

    def test_create_network(self):
        """Test network creation."""
        mgr = NetworkManager()
        result = mgr.create_network(NetworkConfig(name="test-net"))
        assert result is True
        assert "test-net" in mgr.networks
        assert mgr.networks["test-net"].created

    def test_create_network_twice(self, mgr):
        assert mgr.create_network(NetworkConfig(name="proj_default")) is False

    def test_connect_service(self, mgr):
        """Test connecting a service to a network."""
        ip = mgr.connect_service("web", "proj_default", aliases=["webserver"])
        assert ip == "127.0.0.1"
        assert "web" in mgr.service_networks
        assert "web" in mgr.dns_entries
        assert "webserver" in mgr.dns_entries

    def test_connect_to_missing_network(self, mgr):
        with pytest.raises(KeyError):
            mgr.connect_service("web", "proj_nope")

    def test_get_service_discovery_env(self, mgr):
        """Peers on a shared network are discoverable by name."""
        mgr.create_network(NetworkConfig(name="proj_other"))
        mgr.connect_service("db", "proj_default")
        mgr.connect_service("api", "proj_default")
        mgr.connect_service("model-server", "proj_default")
        mgr.connect_service("isolated", "proj_other")

        env = mgr.get_service_discovery_env("api")
        assert env == {"DB_HOST": "127.0.0.1", "MODEL_SERVER_HOST": "127.0.0.1"}
        assert mgr.get_service_discovery_env("isolated") == {}

    def test_disconnect_service(self, mgr):
        mgr.connect_service("db", "proj_default", aliases=["database"])
        mgr.connect_service("api", "proj_default")
        mgr.disconnect_service("db")
        assert "db" not in mgr.service_networks
        assert "db" not in mgr.dns_entries
        assert "database" not in mgr.dns_entries
        assert mgr.get_service_discovery_env("api") == {}
        assert "proj_default" in mgr.networks

    def test_registry_persists_networks(self, tmp_path):
        registry = str(tmp_path / "networks.json")
        NetworkManager(registry).create_network(NetworkConfig(name="proj_default", driver="bridge"))

        reloaded = NetworkManager(registry)
        assert reloaded.get_network("proj_default").driver == "bridge"
