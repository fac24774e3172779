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
Models for defining services, including restart policies, health checks, and mounts.
"""
import os
from typing import List, Dict, Optional, Any
from pydantic import BaseModel, ConfigDict, Field, field_validator
from enum import Enum

from ..UTILS.duration import parse_duration


class ServiceRole(str, Enum):
    """
    The closed set of workload roles a stack may contain.
    Anything else is an opaque generic workload.
    """
    MODEL_SERVER = "model-server"
    VECTOR_DB = "vector-db"
    WEB_UI = "web-ui"
    OBJECT_STORE = "object-store"
    GENERIC = "generic"


class RestartPolicyCondition(str, Enum):
    """
    Conditions under which a service should be restarted.
    """
    NEVER = "never"
    ON_FAILURE = "on-failure"
    UNLESS_STOPPED = "unless-stopped"


# Compose spellings that map onto the supported conditions
_RESTART_ALIASES = {
    "no": RestartPolicyCondition.NEVER,
    "always": RestartPolicyCondition.UNLESS_STOPPED,
}


class RestartPolicy(BaseModel):
    """
    Defines how a service should be restarted on failure or when unhealthy.

    ``max_retries`` overrides the orchestrator-wide cap for ``on-failure``.
    """
    condition: RestartPolicyCondition = RestartPolicyCondition.NEVER
    max_retries: Optional[int] = Field(default=None, ge=0)

    @field_validator("condition", mode="before")
    @classmethod
    def _normalize_condition(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.strip().lower()
            # 'on-failure:5' is accepted, the count is handled by the parser
            value = value.split(":", 1)[0]
            return _RESTART_ALIASES.get(value, value)
        return value


class HealthCheck(BaseModel):
    """
    Defines a command to run to check the health of a service.
    Durations are stored in seconds.
    """
    test: List[str]
    interval: float = 30.0
    timeout: float = 30.0
    retries: int = Field(default=3, ge=1)
    start_period: float = 0.0

    @field_validator("test", mode="before")
    @classmethod
    def _normalize_test(cls, value: Any) -> Any:
        # A plain string is run through the shell, as compose does
        if isinstance(value, str):
            return ["CMD-SHELL", value]
        return value

    @field_validator("interval", "timeout", "start_period", mode="before")
    @classmethod
    def _parse_duration(cls, value: Any) -> float:
        return parse_duration(value)

    @field_validator("interval", "timeout")
    @classmethod
    def _positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be greater than zero")
        return value

    @property
    def disabled(self) -> bool:
        """True for the ``NONE`` form, which turns an inherited check off."""
        return bool(self.test) and self.test[0] == "NONE"


class VolumeMount(BaseModel):
    """
    Mounts a named volume into a service.
    """
    source: str
    target: str
    read_only: bool = False

    @property
    def is_named(self) -> bool:
        """Named volumes are bare names; anything path-like is a bind mount."""
        return not (
            self.source.startswith(('.', '/', '~')) or os.path.isabs(self.source)
        )


class PortBinding(BaseModel):
    """
    A published port. Passed through to the execution substrate untouched.
    """
    container_port: int
    host_port: Optional[int] = None
    host_ip: Optional[str] = None
    protocol: str = "tcp"

    @classmethod
    def parse(cls, text: str) -> "PortBinding":
        """
        Parses the short syntax: '[[host_ip:]host_port:]container_port[/protocol]'.

        :raises ValueError: If the text is not a valid port binding.
        """
        protocol = "tcp"
        if "/" in text:
            text, protocol = text.rsplit("/", 1)

        parts = text.rsplit(":", 2)
        if len(parts) == 1:
            return cls(container_port=int(parts[0]), protocol=protocol)
        if len(parts) == 2:
            return cls(container_port=int(parts[1]), host_port=int(parts[0]) if parts[0] else None,
                       protocol=protocol)
        host_ip = parts[0].strip("[]") or None
        return cls(container_port=int(parts[2]), host_port=int(parts[1]) if parts[1] else None,
                   host_ip=host_ip, protocol=protocol)

    @property
    def loopback_only(self) -> bool:
        return self.host_ip in ("127.0.0.1", "::1", "localhost")


class ResourceReservation(BaseModel):
    """
    A device reservation such as GPUs.
    ``count`` of None means all available devices.
    """
    kind: str = "gpu"
    count: Optional[int] = Field(default=None, ge=0)
    capabilities: List[str] = []
    device_ids: List[str] = []


class ServiceDefinition(BaseModel):
    """
    The full definition of a single service as declared, before substitution.
    """
    name: str
    image_name: str = ""
    role: ServiceRole = ServiceRole.GENERIC

    # Execution
    command: List[str] = []
    working_dir: Optional[str] = None

    # Environment
    environment: Dict[str, str] = {}
    environment_files: List[str] = []

    # Networking
    ports: List[str] = []
    networks: List[str] = []
    host_only: bool = False

    # Storage
    volumes: List[VolumeMount] = []

    # Lifecycle
    restart_policy: RestartPolicy = Field(default_factory=RestartPolicy)
    health_check: Optional[HealthCheck] = None
    depends_on: List[str] = []

    # Resources
    reservations: List[ResourceReservation] = []

    # Metadata
    labels: Dict[str, str] = {}

    @property
    def has_health_check(self) -> bool:
        return self.health_check is not None and not self.health_check.disabled


class ResolvedServiceDefinition(ServiceDefinition):
    """
    A service definition with every ${...} reference substituted.
    Immutable once produced.
    """
    model_config = ConfigDict(frozen=True)
