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

import gc
import os
import sys
import tracemalloc

import psutil
import pytest

from stackup.MANAGERS.environment_manager import EnvironmentManager
from stackup.MODELS.orchestration_config import OrchestrationConfig
from stackup.MODELS.service_definition import ServiceDefinition
from stackup.RUNNERS.process_runner import ProcessRunner


def test_resolution_memory_leak():
    """
    Checks for memory growth when repeatedly resolving a stack.
    """
    tracemalloc.start()
    manager = EnvironmentManager({"TAG": "1.0"})

    gc.collect()
    snapshot1 = tracemalloc.take_snapshot()

    for _ in range(100):
        services = {
            "web": ServiceDefinition(
                name="web", image_name="nginx:${TAG}", command=["python", "-c", "print('hello')"]
            )
        }
        config = OrchestrationConfig(services=services)
        resolved = manager.resolve_config(config)
        del resolved
        del config
        del services

    gc.collect()
    snapshot2 = tracemalloc.take_snapshot()
    top_stats = snapshot2.compare_to(snapshot1, "lineno")
    total_diff = sum(stat.size_diff for stat in top_stats)
    tracemalloc.stop()

    # 1 MB is a very generous threshold for 100 iterations of simple object creation
    assert total_diff < 1024 * 1024


@pytest.mark.skipif(not hasattr(psutil.Process, "num_fds"), reason="num_fds is Unix only")
def test_process_runner_closes_logs(tmp_path):
    """
    Checks that starting and stopping processes does not leak log file handles.
    """
    process = psutil.Process(os.getpid())
    initial_fds = process.num_fds()

    for i in range(30):
        runner = ProcessRunner(f"svc_{i}", log_file=str(tmp_path / f"svc_{i}.log"))
        runner.start([sys.executable, "-c", "print('hi')"], env=dict(os.environ))
        runner.stop(timeout=5)
        del runner

    gc.collect()
    assert process.num_fds() <= initial_fds + 5
