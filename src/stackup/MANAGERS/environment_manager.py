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
Materializes a parsed declaration against a variable set.
"""
import logging
import os
from typing import Dict, List, Mapping, Tuple

from ..errors import ConfigurationError
from ..MODELS.orchestration_config import OrchestrationConfig
from ..MODELS.service_definition import (
    HealthCheck,
    PortBinding,
    ResolvedServiceDefinition,
    ServiceDefinition,
    VolumeMount,
)
from ..PARSERS.env_parser import EnvParser
from ..UTILS.string_interpolation import ParameterResolver

logger = logging.getLogger(__name__)


class EnvironmentManager:
    """
    Resolves ${...} references in every string field of every service and
    merges per-service env files into the environment.
    """
    def __init__(self, variables: Mapping[str, str], base_dir: str = "."):
        """
        Initializes the environment manager.

        :param variables: The variable set for this run.
        :param base_dir: The base directory for resolving relative paths to env files.
        """
        self.base_dir = base_dir
        self.resolver = ParameterResolver(variables)
        self.parser = EnvParser()

    def resolve_config(self, config: OrchestrationConfig) -> OrchestrationConfig:
        """
        Produces a configuration whose services are all resolved, then checks
        that every referenced volume and network is declared.

        :param config: The parsed configuration.
        :return: A new configuration holding ResolvedServiceDefinition objects.
        :raises ConfigurationError: On bad references or conflicting mounts.
        """
        services = {
            name: self.resolve_service(svc) for name, svc in config.services.items()
        }
        resolved = OrchestrationConfig(
            project_name=config.project_name,
            services=services,
            networks=config.networks,
            volumes=config.volumes,
        )
        self.validate_resources(resolved)
        return resolved

    def resolve_service(self, service: ServiceDefinition) -> ResolvedServiceDefinition:
        """
        Resolves a single service.

        :param service: The raw definition.
        :return: The resolved, immutable definition.
        """
        r = self.resolver
        try:
            environment = self.get_merged_environment(
                r.resolve_mapping(service.environment),
                r.resolve_list(service.environment_files),
            )

            health_check = None
            if service.health_check is not None:
                health_check = HealthCheck(
                    test=r.resolve_list(service.health_check.test),
                    interval=service.health_check.interval,
                    timeout=service.health_check.timeout,
                    retries=service.health_check.retries,
                    start_period=service.health_check.start_period,
                )

            return ResolvedServiceDefinition(
                name=service.name,
                image_name=r.resolve(service.image_name),
                role=service.role,
                command=r.resolve_list(service.command),
                working_dir=r.resolve(service.working_dir) if service.working_dir else None,
                environment=environment,
                environment_files=[],
                ports=r.resolve_list(service.ports),
                networks=list(service.networks),
                host_only=service.host_only,
                volumes=[
                    VolumeMount(
                        source=r.resolve(v.source),
                        target=r.resolve(v.target),
                        read_only=v.read_only,
                    )
                    for v in service.volumes
                ],
                restart_policy=service.restart_policy,
                health_check=health_check,
                depends_on=list(service.depends_on),
                reservations=service.reservations,
                labels=r.resolve_mapping(service.labels),
            )
        except ConfigurationError as e:
            raise ConfigurationError(f"Service '{service.name}': {e}") from e

    def get_merged_environment(self,
                               explicit_env: Dict[str, str],
                               env_files: List[str]) -> Dict[str, str]:
        """
        Merges variables from the service's env files with its explicitly
        defined environment.

        :param explicit_env: A dictionary of explicitly defined environment variables.
        :param env_files: A list of paths to .env files.
        :return: A dictionary containing the merged environment variables.
        """
        merged_env: Dict[str, str] = {}

        # 1. Load from env files (later files override earlier ones)
        for env_file in env_files:
            file_path = os.path.join(self.base_dir, env_file)
            if not os.path.exists(file_path):
                raise ConfigurationError(f"env_file not found: {file_path}")
            merged_env.update(self.parser.parse(file_path))

        # 2. Explicit environment variables override everything
        merged_env.update(explicit_env)

        return merged_env

    @staticmethod
    def validate_resources(config: OrchestrationConfig) -> None:
        """
        Checks resource references across all services.

        Every named volume and network must be declared at the top level, ports
        must parse, a host-only service may only publish on loopback, and a named
        volume may only be mounted at one path with one access mode across the stack.

        :raises ConfigurationError: On the first problem found.
        """
        mounts: Dict[str, Tuple[str, bool, str]] = {}

        for name, svc in config.services.items():
            for network in svc.networks:
                if network not in config.networks:
                    raise ConfigurationError(
                        f"Service '{name}' uses undeclared network '{network}'"
                    )
            if svc.host_only and svc.networks:
                raise ConfigurationError(
                    f"Service '{name}' uses network_mode host and cannot join networks"
                )

            for port in svc.ports:
                try:
                    binding = PortBinding.parse(port)
                except ValueError:
                    raise ConfigurationError(f"Service '{name}' has an invalid port '{port}'")
                if svc.host_only and not binding.loopback_only:
                    raise ConfigurationError(
                        f"Service '{name}' uses network_mode host and must publish "
                        f"'{port}' on a loopback address"
                    )

            for mount in svc.volumes:
                if not mount.is_named:
                    continue
                if mount.source not in config.volumes:
                    raise ConfigurationError(
                        f"Service '{name}' uses undeclared volume '{mount.source}'"
                    )
                seen = mounts.get(mount.source)
                if seen is None:
                    mounts[mount.source] = (mount.target, mount.read_only, name)
                    continue
                target, read_only, other = seen
                if (target, read_only) != (mount.target, mount.read_only):
                    raise ConfigurationError(
                        f"Volume '{mount.source}' is mounted inconsistently: "
                        f"'{other}' uses {target}{':ro' if read_only else ''}, "
                        f"'{name}' uses {mount.target}{':ro' if mount.read_only else ''}"
                    )

        logger.debug("Validated resources for %d services", len(config.services))
