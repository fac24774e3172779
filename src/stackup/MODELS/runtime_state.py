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
Runtime states of services and outcomes of a run.
"""
from enum import Enum
from typing import Dict, FrozenSet, Tuple


class RuntimeState(str, Enum):
    """Lifecycle state of a single service, owned by the orchestrator."""

    PENDING = "pending"
    STARTING = "starting"
    RUNNING = "running"
    HEALTH_CHECKING = "health_checking"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"


# Allowed transitions. STOPPING and FAILED can be entered from anywhere.
TRANSITIONS: Dict[RuntimeState, FrozenSet[RuntimeState]] = {
    RuntimeState.PENDING: frozenset({RuntimeState.STARTING}),
    RuntimeState.STARTING: frozenset({RuntimeState.RUNNING}),
    RuntimeState.RUNNING: frozenset({RuntimeState.HEALTH_CHECKING}),
    RuntimeState.HEALTH_CHECKING: frozenset(
        {RuntimeState.HEALTHY, RuntimeState.UNHEALTHY}
    ),
    RuntimeState.HEALTHY: frozenset({RuntimeState.UNHEALTHY}),
    # Restarts re-enter STARTING
    RuntimeState.UNHEALTHY: frozenset({RuntimeState.HEALTHY, RuntimeState.STARTING}),
    RuntimeState.FAILED: frozenset({RuntimeState.STARTING}),
    RuntimeState.STOPPING: frozenset({RuntimeState.STOPPED}),
    RuntimeState.STOPPED: frozenset(),
}

_FROM_ANYWHERE: Tuple[RuntimeState, ...] = (RuntimeState.STOPPING, RuntimeState.FAILED)


def is_valid_transition(current: RuntimeState, new: RuntimeState) -> bool:
    """Checks a transition against the documented state machine."""
    if new in _FROM_ANYWHERE:
        return current not in (RuntimeState.STOPPED, new)
    return new in TRANSITIONS.get(current, frozenset())


class RunOutcome(str, Enum):
    """Terminal outcome of bringing a stack up."""

    SUCCESS = "success"
    DEPENDENCY_TIMEOUT = "dependency_timeout"
    LAUNCH_FAILURE = "launch_failure"
    STOPPED = "stopped"
