import asyncio
import os
import sys

import pytest

from stackup.errors import ConfigurationError
from stackup.MANAGERS.volume_manager import VolumeManager
from stackup.MODELS.service_definition import ResolvedServiceDefinition
from stackup.PARSERS.compose_parser import ComposeParser
from stackup.RUNNERS.process_runner import ProcessRunner
from stackup.RUNNERS.substrate import LaunchContext
from stackup.RUNNERS.process_runner import LocalProcessSubstrate
from stackup.UTILS.string_interpolation import ParameterResolver


@pytest.mark.skipif(os.name == 'nt', reason="uses POSIX tools")
def test_command_injection_attempt(tmp_path):
    """
    Service commands are argv lists; shell operators in them stay literal.
    """
    injected_file = tmp_path / "injected.txt"
    runner = ProcessRunner(name="test_injection")
    runner.start(command=["echo", "hello", ";", "touch", str(injected_file)], env=dict(os.environ))
    runner.stop(timeout=5)

    assert not injected_file.exists(), "Command injection successful! Security vulnerability found."


def test_interpolated_values_are_not_executed(tmp_path):
    """
    A variable value that looks like a shell command is substituted as text.
    """
    marker = tmp_path / "pwned"
    resolver = ParameterResolver({"NAME": f"$(touch {marker})"})
    assert resolver.resolve("hello ${NAME}") == f"hello $(touch {marker})"

    spec = ResolvedServiceDefinition(
        name="echo", command=[sys.executable, "-c", "import sys; print(sys.argv[1])",
                              resolver.resolve("${NAME}")],
    )
    substrate = LocalProcessSubstrate(str(tmp_path))

    async def scenario():
        handle = await substrate.launch(spec, LaunchContext(project="test"))
        code = await asyncio.wait_for(substrate.wait(handle), timeout=10)
        await substrate.stop(handle)
        return code

    assert asyncio.run(scenario()) == 0
    assert not marker.exists()


@pytest.mark.parametrize("name", ["../escape", "..", ".", "", "a/b"])
def test_volume_names_cannot_escape_root(tmp_path, name):
    manager = VolumeManager(str(tmp_path), "volumes")
    with pytest.raises(ValueError):
        manager.create_volume(name)
    assert not (tmp_path / "escape").exists()


def test_yaml_tags_are_rejected():
    """Only plain YAML is accepted; python object tags never construct anything."""
    content = "services:\n  a: !!python/object/apply:os.system ['echo pwned']\n"
    with pytest.raises(ConfigurationError):
        ComposeParser().parse_from_string(content)


def test_missing_compose_file():
    with pytest.raises(ConfigurationError):
        ComposeParser().parse("non_existent_file_12345.yml")
