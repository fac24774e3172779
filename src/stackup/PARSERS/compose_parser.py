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
Parsers for Docker Compose YAML files.

The parser produces raw service definitions. ${...} references are left in
place and resolved later, field by field, against the variable set.
"""
import logging
import os
import re
import shlex
import yaml
from typing import Dict, Any, List, Optional

from ..errors import ConfigurationError, DuplicateService
from ..MODELS.orchestration_config import (
    OrchestrationConfig,
    NetworkDefinition,
    VolumeDefinition,
)
from ..MODELS.service_definition import (
    ServiceDefinition,
    ServiceRole,
    RestartPolicy,
    HealthCheck,
    VolumeMount,
    ResourceReservation,
)

logger = logging.getLogger(__name__)

DEFAULT_NETWORK = "default"
ROLE_LABEL = "stackup.role"

TOP_LEVEL_KEYS = {"version", "name", "services", "networks", "volumes"}

SERVICE_KEYS = {
    "image",
    "command",
    "entrypoint",
    "environment",
    "env_file",
    "volumes",
    "networks",
    "network_mode",
    "ports",
    "healthcheck",
    "deploy",
    "restart",
    "depends_on",
    "labels",
    "working_dir",
    "container_name",
    "role",
    "host_only",
}


def normalize_project_name(name: str) -> str:
    """Lowercases a project name and strips characters compose does not allow."""
    normalized = re.sub(r'[^a-z0-9_-]', '', name.lower())
    return normalized or "default"


class ComposeParser:
    """
    Parser for docker-compose.yml files.
    """
    def __init__(self, project_name: Optional[str] = None):
        """
        Initializes the parser.

        :param project_name: Overrides the project name from the file or directory.
        """
        self.project_name = project_name

    def parse(self, compose_path: str) -> OrchestrationConfig:
        """
        Parses a compose file from a path.

        :param compose_path: Path to the compose file.
        :return: Parsed configuration.
        """
        try:
            with open(compose_path, 'r', encoding='utf-8') as f:
                content = f.read()
        except OSError as e:
            raise ConfigurationError(f"Cannot read compose file {compose_path}: {e}") from e

        directory = os.path.basename(os.path.dirname(os.path.abspath(compose_path)))
        return self.parse_from_string(content, default_project=directory)

    def parse_from_string(self, content: str, default_project: str = "default") -> OrchestrationConfig:
        """
        Parses a compose file from a string.

        :param content: YAML content of the compose file.
        :param default_project: Project name used when neither the parser nor
            the file names one.
        :return: Parsed configuration.
        """
        try:
            self._check_duplicate_services(content)
            data = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid compose YAML: {e}") from e

        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigurationError("Compose file must be a mapping at the top level")

        unknown = [k for k in data if k not in TOP_LEVEL_KEYS and not str(k).startswith('x-')]
        if unknown:
            raise ConfigurationError(f"Unsupported top-level keys: {', '.join(map(str, unknown))}")

        project = self.project_name or data.get('name') or default_project

        raw_services = data.get('services') or {}
        if not isinstance(raw_services, dict):
            raise ConfigurationError("'services' must be a mapping")

        services = {}
        for name, spec in raw_services.items():
            services[str(name)] = self._parse_service(str(name), spec or {})

        networks = self._parse_resources(data.get('networks'), NetworkDefinition, 'networks')
        volumes = self._parse_resources(data.get('volumes'), VolumeDefinition, 'volumes')

        # Services that name no network join the implicit default network
        for svc in services.values():
            if not svc.networks and not svc.host_only:
                svc.networks = [DEFAULT_NETWORK]
                networks.setdefault(DEFAULT_NETWORK, NetworkDefinition(name=DEFAULT_NETWORK))

        logger.debug("Parsed %d services for project %s", len(services), project)
        return OrchestrationConfig(
            project_name=normalize_project_name(str(project)),
            services=services,
            networks=networks,
            volumes=volumes,
        )

    @staticmethod
    def _check_duplicate_services(content: str) -> None:
        """
        yaml.safe_load silently keeps the last of two identical keys, so
        the 'services' mapping is inspected at the node level first.
        """
        root = yaml.compose(content, Loader=yaml.SafeLoader)
        if not isinstance(root, yaml.MappingNode):
            return
        for key_node, value_node in root.value:
            if key_node.value != 'services' or not isinstance(value_node, yaml.MappingNode):
                continue
            seen = set()
            for service_key, _ in value_node.value:
                if not isinstance(service_key, yaml.ScalarNode):
                    continue
                if service_key.value in seen:
                    raise DuplicateService(service_key.value)
                seen.add(service_key.value)

    @staticmethod
    def _parse_resources(spec: Any, model: Any, section: str) -> Dict[str, Any]:
        """
        Parses the top-level networks or volumes section.
        """
        if not spec:
            return {}
        if isinstance(spec, list):
            spec = {name: {} for name in spec}
        if not isinstance(spec, dict):
            raise ConfigurationError(f"'{section}' must be a mapping")

        resources = {}
        for name, attrs in spec.items():
            try:
                attrs = dict(attrs or {})
                # Resources are always named after their key, scoped by project
                attrs.pop('name', None)
                resources[str(name)] = model(name=str(name), **attrs)
            except (TypeError, ValueError) as e:
                raise ConfigurationError(f"Invalid {section} entry '{name}': {e}") from e
        return resources

    def _parse_service(self, name: str, spec: Dict[str, Any]) -> ServiceDefinition:
        """
        Parses a single service definition from a compose file.

        :param name: The name of the service.
        :param spec: The service specification dictionary.
        :return: A ServiceDefinition instance.
        """
        if not isinstance(spec, dict):
            raise ConfigurationError(f"Service '{name}' must be a mapping")

        unknown = [k for k in spec if k not in SERVICE_KEYS and not str(k).startswith('x-')]
        if unknown:
            raise ConfigurationError(
                f"Service '{name}' uses unsupported keys: {', '.join(map(str, unknown))}"
            )

        try:
            labels = self._to_mapping(spec.get('labels', {}), f"{name}.labels")
            network_mode = spec.get('network_mode', 'bridge')
            if spec.get('container_name'):
                logger.debug("Service %s: container_name is ignored", name)
            if network_mode not in ('bridge', 'host'):
                raise ConfigurationError(
                    f"Service '{name}': unsupported network_mode '{network_mode}'"
                )

            return ServiceDefinition(
                name=name,
                image_name=spec.get('image', ''),
                role=self._parse_role(name, spec.get('role', labels.get(ROLE_LABEL))),
                command=self._to_command(spec.get('entrypoint')) + self._to_command(spec.get('command')),
                working_dir=spec.get('working_dir'),
                environment=self._to_mapping(spec.get('environment', {}), f"{name}.environment"),
                environment_files=self._to_list(spec.get('env_file')),
                ports=[self._port_to_string(p) for p in spec.get('ports', [])],
                networks=self._parse_networks(spec.get('networks')),
                host_only=(network_mode == 'host' or bool(spec.get('host_only', False))),
                volumes=[self._parse_volume(name, v) for v in spec.get('volumes', [])],
                restart_policy=self._parse_restart(spec.get('restart', 'no')),
                health_check=self._parse_health_check(spec.get('healthcheck')),
                depends_on=self._parse_depends_on(spec.get('depends_on')),
                reservations=self._parse_reservations(spec.get('deploy')),
                labels=labels,
            )
        except (ValueError, TypeError, KeyError, AttributeError) as e:
            # pydantic ValidationError is a ValueError
            raise ConfigurationError(f"Invalid definition for service '{name}':\n{e}") from e

    @staticmethod
    def _parse_role(name: str, role: Optional[str]) -> ServiceRole:
        # An explicit role key wins over the label
        if role is None:
            return ServiceRole.GENERIC
        try:
            return ServiceRole(role)
        except ValueError:
            allowed = ", ".join(r.value for r in ServiceRole)
            raise ConfigurationError(
                f"Service '{name}': unknown role '{role}' (expected one of {allowed})"
            )

    @staticmethod
    def _parse_restart(value: Any) -> RestartPolicy:
        if value is False:
            value = 'no'
        text = str(value)
        max_retries = None
        # on-failure:N carries its own retry cap
        if ':' in text:
            text, count = text.split(':', 1)
            try:
                max_retries = int(count)
            except ValueError:
                raise ConfigurationError(f"Invalid restart policy: {value!r}")
        return RestartPolicy(condition=text, max_retries=max_retries)

    @staticmethod
    def _parse_health_check(spec: Any) -> Optional[HealthCheck]:
        if not spec:
            return None
        if spec.get('disable'):
            return None
        fields = {k: v for k, v in spec.items() if k in ('test', 'interval', 'timeout', 'retries', 'start_period')}
        return HealthCheck(**fields)

    @staticmethod
    def _parse_volume(service: str, v: Any) -> VolumeMount:
        if isinstance(v, dict):
            source = v.get('source')
            target = v.get('target')
            if not source or not target:
                raise ConfigurationError(f"Service '{service}': volume needs source and target")
            return VolumeMount(source=source, target=target, read_only=bool(v.get('read_only', False)))

        parts = ComposeParser._split_mount(str(v))
        if len(parts) == 2:
            return VolumeMount(source=parts[0], target=parts[1])
        if len(parts) == 3 and parts[2] in ('ro', 'rw'):
            return VolumeMount(source=parts[0], target=parts[1], read_only=(parts[2] == 'ro'))
        raise ConfigurationError(f"Service '{service}': invalid volume mount {v!r}")

    @staticmethod
    def _split_mount(text: str) -> List[str]:
        """
        Splits 'source:target[:mode]' on the colons outside ${...} references,
        so defaults like ${DIR:-./models} stay whole until resolution.
        """
        parts: List[str] = []
        current: List[str] = []
        depth = 0
        i = 0
        while i < len(text):
            if text.startswith('$$', i):
                current.append('$$')
                i += 2
                continue
            if text.startswith('${', i):
                depth += 1
                current.append('${')
                i += 2
                continue
            ch = text[i]
            if ch == '}' and depth:
                depth -= 1
            elif ch == ':' and not depth:
                parts.append(''.join(current))
                current = []
                i += 1
                continue
            current.append(ch)
            i += 1
        parts.append(''.join(current))
        return parts

    @staticmethod
    def _port_to_string(p: Any) -> str:
        """Normalizes long-syntax ports to the short 'ip:host:container/proto' form."""
        if isinstance(p, dict):
            text = str(p['target'])
            if p.get('published') is not None:
                text = f"{p['published']}:{text}"
                if p.get('host_ip'):
                    text = f"{p['host_ip']}:{text}"
            if p.get('protocol'):
                text = f"{text}/{p['protocol']}"
            return text
        return str(p)

    @staticmethod
    def _parse_networks(spec: Any) -> List[str]:
        if not spec:
            return []
        if isinstance(spec, dict):
            return [str(k) for k in spec.keys()]
        return [str(n) for n in spec]

    @staticmethod
    def _parse_depends_on(spec: Any) -> List[str]:
        # Any condition in the long form gates on readiness
        if not spec:
            return []
        if isinstance(spec, dict):
            return [str(k) for k in spec.keys()]
        return [str(d) for d in spec]

    @staticmethod
    def _parse_reservations(deploy: Any) -> List[ResourceReservation]:
        if not deploy:
            return []
        devices = (
            deploy.get('resources', {}).get('reservations', {}).get('devices', [])
        )
        reservations = []
        for device in devices:
            count = device.get('count')
            capabilities = [str(c) for c in device.get('capabilities', [])]
            reservations.append(ResourceReservation(
                kind=device.get('driver') or (capabilities[0] if capabilities else 'gpu'),
                count=None if count in (None, 'all') else int(count),
                capabilities=capabilities,
                device_ids=[str(d) for d in device.get('device_ids', [])],
            ))
        return reservations

    @staticmethod
    def _to_mapping(spec: Any, where: str) -> Dict[str, str]:
        """
        Converts list-form ('KEY=VALUE') or mapping-form entries to a dict of strings.
        """
        if not spec:
            return {}
        if isinstance(spec, list):
            result = {}
            for e in map(str, spec):
                if "=" in e:
                    k, v = e.split('=', 1)
                    result[k] = v
                else:
                    result[e] = ''
            return result
        if isinstance(spec, dict):
            return {str(k): '' if v is None else ComposeParser._scalar(v) for k, v in spec.items()}
        raise ConfigurationError(f"'{where}' must be a list or a mapping")

    @staticmethod
    def _scalar(value: Any) -> str:
        # YAML booleans would otherwise become 'True'/'False'
        if isinstance(value, bool):
            return 'true' if value else 'false'
        return str(value)

    def _to_list(self, val: Any) -> List[str]:
        """
        Helper to ensure a value is a list of strings.

        :param val: The value to convert.
        :return: A list of strings.
        """
        if val is None:
            return []
        if isinstance(val, str):
            return [val]
        return [str(v) for v in val]

    def _to_command(self, val: Any) -> List[str]:
        """
        Like _to_list, but the string form is split the way a shell would.
        """
        if isinstance(val, str):
            return shlex.split(val)
        return self._to_list(val)
