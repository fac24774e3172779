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
Execution of services as local system processes with log redirection.
"""
import asyncio
import logging
import os
import subprocess
import time
from typing import IO, List, Dict, Optional, Union

import psutil

from ..errors import LaunchError, ProbeError
from ..MANAGERS.volume_manager import VolumeManager
from ..MODELS.service_definition import ResolvedServiceDefinition
from .substrate import ExecutionSubstrate, LaunchContext, ProbeResult, ProcessHandle

logger = logging.getLogger(__name__)

# Probe output kept for status display
_OUTPUT_LIMIT = 500

# Seconds between checks for an exited service
_EXIT_POLL_INTERVAL = 0.5


def terminate_process_tree(pid: int, timeout: float = 10.0) -> bool:
    """
    Sends SIGTERM to a process and all of its children, then SIGKILL to
    whatever is left after the timeout.

    :param pid: The root process id.
    :param timeout: Seconds to wait for termination before killing.
    :return: False if the process no longer existed.
    """
    try:
        root = psutil.Process(pid)
    except psutil.NoSuchProcess:
        return False

    try:
        procs = root.children(recursive=True) + [root]
    except psutil.NoSuchProcess:
        procs = [root]

    for proc in procs:
        try:
            proc.terminate()
        except psutil.NoSuchProcess:
            pass

    _, alive = psutil.wait_procs(procs, timeout=timeout)
    for proc in alive:
        logger.warning("Process %d did not terminate, killing", proc.pid)
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            pass
    psutil.wait_procs(alive, timeout=timeout)
    return True


class ProcessRunner:
    """
    Manages the execution of a single system process.
    """
    def __init__(self, name: str, log_file: Optional[str] = None):
        """
        Initializes the process runner.

        Args:
            name (str): Identifier for the process.
            log_file (Optional[str]): Path to a file where stdout/stderr will be redirected.
        """
        self.name = name
        self.log_file = log_file
        self.process: Optional[subprocess.Popen] = None
        self._log_handle: Optional[IO[str]] = None

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process else None

    def start(self,
              command: List[str],
              env: Dict[str, str],
              working_dir: Optional[str] = None):
        """
        Starts the process.

        Args:
            command (List[str]): Command and arguments to execute.
            env (Dict[str, str]): Environment variables for the process.
            working_dir (Optional[str]): Directory to start the process in.
        """
        if working_dir and not os.path.exists(working_dir):
            os.makedirs(working_dir, exist_ok=True)

        stdout = subprocess.DEVNULL
        if self.log_file:
            log_dir = os.path.dirname(self.log_file)
            if log_dir:
                os.makedirs(log_dir, exist_ok=True)
            self._log_handle = open(self.log_file, 'a')
            stdout = self._log_handle

        logger.info("[%s] Starting command: %s", self.name, ' '.join(command))

        try:
            self.process = subprocess.Popen(
                command,
                env=env,
                cwd=working_dir,
                stdout=stdout,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                text=True,
                # Avoid shell=True for security reasons (CWE-78)
                shell=False,
                # Keep Ctrl+C in the terminal from reaching services directly;
                # shutdown order is the orchestrator's job
                start_new_session=True,
            )
        except (OSError, ValueError) as e:
            self._close_log()
            raise LaunchError(self.name, str(e)) from e

    def stop(self, timeout: float = 10.0):
        """
        Stops the process and its children, killing them if they do not stop.

        Args:
            timeout (float): Seconds to wait for termination before killing.
        """
        if self.process:
            logger.info("[%s] Stopping process...", self.name)
            if self.process.poll() is None:
                terminate_process_tree(self.process.pid, timeout)
            # Reap the child
            try:
                self.process.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                logger.warning("[%s] Process did not exit after kill", self.name)
        self._close_log()

    def is_running(self) -> bool:
        """
        Checks if the process is currently running.

        Returns:
            bool: True if running, False otherwise.
        """
        return self.process is not None and self.process.poll() is None

    def get_exit_code(self) -> Optional[int]:
        """
        Gets the exit code of the process.

        Returns:
            Optional[int]: Exit code if process finished, None otherwise.
        """
        if self.process:
            return self.process.poll()
        return None

    def _close_log(self):
        if self._log_handle:
            self._log_handle.close()
            self._log_handle = None


def run_probe(command: List[str],
              env: Optional[Dict[str, str]] = None,
              timeout: Optional[float] = None) -> ProbeResult:
    """
    Runs a compose-style health check command.

    :param command: ``["CMD", ...]``, ``["CMD-SHELL", "..."]``, ``["NONE"]`` or a bare argv.
    :param env: Environment for the check.
    :param timeout: Seconds before the check is abandoned.
    :return: The exit code and a truncated copy of the output.
    """
    if not command or command[0] == "NONE":
        return ProbeResult(exit_code=0)

    use_shell = False
    real_cmd: Union[List[str], str]
    if command[0] == "CMD":
        real_cmd = command[1:]
    elif command[0] == "CMD-SHELL":
        real_cmd = " ".join(command[1:])
        use_shell = True
    else:
        real_cmd = command

    try:
        result = subprocess.run(
            real_cmd,
            shell=use_shell,
            env=env,
            capture_output=True,
            timeout=timeout,
            text=True,
        )
    except subprocess.TimeoutExpired:
        return ProbeResult(exit_code=124, output="Health check timed out")

    output = result.stdout if result.returncode == 0 else (result.stderr or result.stdout)
    return ProbeResult(exit_code=result.returncode, output=(output or "")[:_OUTPUT_LIMIT])


class LocalProcessSubstrate(ExecutionSubstrate):
    """
    Runs each service's resolved command as a native process on this host.

    The image reference and device reservations are recorded but not acted
    on. Named volumes are linked into place by the volume manager, and network
    peers are exposed through <SERVICE>_HOST variables.
    """
    def __init__(self,
                 base_dir: str = ".",
                 log_dir: Optional[str] = None,
                 volume_manager: Optional[VolumeManager] = None,
                 stop_timeout: float = 10.0,
                 inherit_environ: bool = True):
        """
        Initializes the substrate.

        :param base_dir: Directory services run in unless they set working_dir.
        :param log_dir: Where per-service logs go. Defaults to <base_dir>/.stackup/logs.
        :param volume_manager: Used to link named volumes to mount targets.
        :param stop_timeout: Seconds a service gets to exit before it is killed.
        :param inherit_environ: Whether services see this process's environment.
        """
        self.base_dir = os.path.abspath(base_dir)
        self.log_dir = log_dir or os.path.join(self.base_dir, ".stackup", "logs")
        self.volume_manager = volume_manager
        self.stop_timeout = stop_timeout
        self.inherit_environ = inherit_environ
        self._environments: Dict[str, Dict[str, str]] = {}

    async def launch(self, spec: ResolvedServiceDefinition, context: LaunchContext) -> ProcessHandle:
        if not spec.command:
            raise LaunchError(spec.name, "no command specified, nothing to run")

        env = os.environ.copy() if self.inherit_environ else {}
        env.update(context.extra_env)
        for volume, path in context.volume_paths.items():
            env[f"STACKUP_VOLUME_{volume.upper().replace('-', '_')}"] = path
        env.update(spec.environment)

        working_dir = spec.working_dir
        if working_dir and not os.path.isabs(working_dir):
            working_dir = os.path.join(self.base_dir, working_dir)
        working_dir = working_dir or self.base_dir

        if self.volume_manager is not None:
            try:
                self.volume_manager.prepare_volumes(
                    spec.volumes, context.volume_paths, service_working_dir=working_dir
                )
            except OSError as e:
                raise LaunchError(spec.name, f"cannot prepare volumes: {e}") from e

        runner = ProcessRunner(spec.name, log_file=os.path.join(self.log_dir, f"{spec.name}.log"))
        runner.start(list(spec.command), env=env, working_dir=working_dir)

        self._environments[spec.name] = env
        return ProcessHandle(service=spec.name, pid=runner.pid, started_at=time.time(), native=runner)

    async def stop(self, handle: ProcessHandle) -> None:
        runner = handle.native
        if isinstance(runner, ProcessRunner):
            await asyncio.to_thread(runner.stop, self.stop_timeout)
        elif handle.pid is not None:
            await asyncio.to_thread(terminate_process_tree, handle.pid, self.stop_timeout)
        self._environments.pop(handle.service, None)

    async def probe(self, handle: ProcessHandle, command: List[str],
                    timeout: Optional[float] = None) -> ProbeResult:
        runner = handle.native
        if isinstance(runner, ProcessRunner) and not runner.is_running():
            return ProbeResult(
                exit_code=1, output=f"Process exited with code {runner.get_exit_code()}"
            )
        env = self._environments.get(handle.service)
        try:
            return await asyncio.to_thread(run_probe, command, env, timeout)
        except OSError as e:
            raise ProbeError(handle.service, str(e)) from e

    async def wait(self, handle: ProcessHandle) -> int:
        runner = handle.native
        if not isinstance(runner, ProcessRunner):
            return await super().wait(handle)
        while runner.is_running():
            await asyncio.sleep(_EXIT_POLL_INTERVAL)
        return runner.get_exit_code()
