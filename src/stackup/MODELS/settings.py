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
Orchestrator-level settings that are not part of the stack declaration.
"""
from typing import Any, Optional
from pydantic import BaseModel, Field, field_validator

from ..UTILS.duration import parse_duration


class OrchestratorSettings(BaseModel):
    """
    Tunables for a run. Every timeout is finite; the only unbounded retry
    is the ``unless-stopped`` restart policy.
    """
    project_name: Optional[str] = None
    state_dir: str = ".stackup"

    # How long a dependent waits for each of its dependencies to be ready
    dependency_timeout: float = 300.0

    # Retry cap for the on-failure restart policy
    max_restarts: int = Field(default=5, ge=0)

    # Exponential restart backoff
    backoff_initial: float = 1.0
    backoff_max: float = 60.0

    # Grace period for a service to exit on stop before it is killed
    stop_timeout: float = 10.0

    @field_validator(
        "dependency_timeout", "backoff_initial", "backoff_max", "stop_timeout",
        mode="before",
    )
    @classmethod
    def _parse_duration(cls, value: Any) -> float:
        return parse_duration(value)
