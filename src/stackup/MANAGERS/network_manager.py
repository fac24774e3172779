"""
Network management for services, handling logical networks and service discovery.

Every service runs on this host, so a network is a membership list rather
than an address space: members reach each other by service name, which
resolves to the loopback address.
"""
import json
import logging
import os
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Set

logger = logging.getLogger(__name__)

LOOPBACK = "127.0.0.1"


@dataclass
class NetworkConfig:
    """A created, project-scoped network."""
    name: str
    driver: str = "bridge"
    external: bool = False
    labels: Dict[str, str] = field(default_factory=dict)
    created: str = ""


class NetworkManager:
    """
    Manages network membership and name-based service discovery.

    Created networks are recorded in a JSON registry so they survive across
    runs. Membership is runtime state only.
    """
    def __init__(self, registry_path: Optional[str] = None):
        """
        Initializes the network manager.

        :param registry_path: JSON file where created networks are recorded.
            If None, networks are only kept in memory.
        """
        self.registry_path = registry_path
        self.networks: Dict[str, NetworkConfig] = {}
        self.service_networks: Dict[str, Set[str]] = {}  # service -> network names
        self.dns_entries: Dict[str, str] = {}  # hostname -> address
        self._aliases: Dict[str, List[str]] = {}  # service -> extra hostnames
        self._load_registry()

    def create_network(self, config: NetworkConfig) -> bool:
        """
        Records a network.

        :param config: The network, named by its scoped identity.
        :return: False if the network already existed.
        """
        if config.name in self.networks:
            return False
        if not config.created:
            config.created = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
        self.networks[config.name] = config
        self._save_registry()
        logger.info("Created network %s", config.name)
        return True

    def get_network(self, name: str) -> Optional[NetworkConfig]:
        return self.networks.get(name)

    def connect_service(self, service: str, network: str,
                        aliases: Optional[List[str]] = None) -> str:
        """
        Attaches a service to a network.

        :param service: The service name.
        :param network: The scoped network name.
        :param aliases: Extra hostnames for the service.
        :return: The address the service is reachable at.
        :raises KeyError: If the network has not been created.
        """
        if network not in self.networks:
            raise KeyError(f"Network {network} does not exist")
        self.service_networks.setdefault(service, set()).add(network)
        self._aliases[service] = list(aliases or self._aliases.get(service, []))
        for hostname in [service] + self._aliases[service]:
            self.dns_entries[hostname] = LOOPBACK
        logger.debug("Connected %s to %s", service, network)
        return LOOPBACK

    def disconnect_service(self, service: str, network: Optional[str] = None):
        """
        Detaches a service from one network, or from all of them.
        """
        networks = self.service_networks.get(service)
        if not networks:
            return
        if network is None:
            networks.clear()
        else:
            networks.discard(network)
        if not networks:
            del self.service_networks[service]
            for hostname in [service] + self._aliases.pop(service, []):
                self.dns_entries.pop(hostname, None)

    def peers(self, service: str) -> List[str]:
        """Services sharing at least one network with the given service."""
        mine = self.service_networks.get(service, set())
        return sorted(
            other for other, nets in self.service_networks.items()
            if other != service and mine & nets
        )

    def get_service_discovery_env(self, service: str) -> Dict[str, str]:
        """
        Generates environment variables for service discovery.
        Example: DB_HOST=127.0.0.1

        :param service: The service the variables are for.
        :return: One <PEER>_HOST variable per reachable peer.
        """
        env = {}
        for name in self.peers(service):
            prefix = name.upper().replace('-', '_').replace('.', '_')
            env[f"{prefix}_HOST"] = self.dns_entries.get(name, LOOPBACK)
        return env

    def _load_registry(self):
        if not self.registry_path or not os.path.exists(self.registry_path):
            return
        with open(self.registry_path, 'r', encoding='utf-8') as f:
            data = json.load(f)
        for entry in data.get("networks", []):
            self.networks[entry["name"]] = NetworkConfig(**entry)

    def _save_registry(self):
        if not self.registry_path:
            return
        directory = os.path.dirname(self.registry_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        tmp = f"{self.registry_path}.tmp"
        with open(tmp, 'w', encoding='utf-8') as f:
            json.dump({"networks": [asdict(n) for n in self.networks.values()]}, f, indent=2)
        os.replace(tmp, self.registry_path)
