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
Exception hierarchy for stackup.

Configuration and resource errors abort a run. Launch and probe errors are
absorbed by restart and health policy, and only surface once retry budgets
are exhausted.
"""
from typing import List, Optional


class StackupError(Exception):
    """Base class for all stackup errors."""


class ConfigurationError(StackupError):
    """
    The declaration or variable set cannot be materialized.
    Raised before any service is started.
    """


class UnknownDependency(ConfigurationError):
    """A service depends on a name that is not declared."""

    def __init__(self, service: str, dependency: str):
        self.service = service
        self.dependency = dependency
        super().__init__(
            f"Service '{service}' depends on undeclared service '{dependency}'"
        )


class CyclicDependency(ConfigurationError):
    """The dependency declarations contain a cycle."""

    def __init__(self, cycle: List[str]):
        self.cycle = list(cycle)
        super().__init__(
            "Circular dependency detected: "
            + " -> ".join(self.cycle + self.cycle[:1])
        )


class DuplicateService(ConfigurationError):
    """Two services share the same identity."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Service '{name}' is declared more than once")


class ResourceError(StackupError):
    """A shared network or volume could not be created."""

    def __init__(self, resource: str, reason: str):
        self.resource = resource
        self.reason = reason
        super().__init__(f"Failed to create resource '{resource}': {reason}")


class LaunchError(StackupError):
    """The execution substrate failed to start a service."""

    def __init__(self, service: str, reason: str):
        self.service = service
        self.reason = reason
        super().__init__(f"Failed to launch service '{service}': {reason}")


class ProbeError(StackupError):
    """A health probe could not be executed at all."""

    def __init__(self, service: str, reason: str):
        self.service = service
        self.reason = reason
        super().__init__(f"Health probe for '{service}' failed: {reason}")


class DependencyTimeout(StackupError):
    """A dependency did not become ready within the configured timeout."""

    def __init__(self, service: str, waiting_on: List[str], timeout: Optional[float]):
        self.service = service
        self.waiting_on = list(waiting_on)
        self.timeout = timeout
        super().__init__(
            f"Service '{service}' timed out after {timeout}s waiting for: "
            + ", ".join(self.waiting_on)
        )
