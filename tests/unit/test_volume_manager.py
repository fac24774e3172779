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
Unit tests for the volume manager.
"""
import os
import pytest
from stackup.MANAGERS.volume_manager import VolumeManager
from stackup.MODELS.service_definition import VolumeMount


class TestVolumeManager:
    """Tests for VolumeManager."""

    def test_init(self, tmp_path):
        """Test initialization."""
        vm = VolumeManager(base_dir=str(tmp_path))
        assert os.path.exists(vm.volumes_root)

    def test_create_volume(self, tmp_path):
        """Test volume creation."""
        vm = VolumeManager(base_dir=str(tmp_path))
        vol = vm.create_volume("proj_data")
        assert vol.name == "proj_data"
        assert os.path.exists(vol.path)

    def test_create_volume_idempotent(self, tmp_path):
        """Creating the same volume twice keeps its contents."""
        vm = VolumeManager(base_dir=str(tmp_path))
        vol1 = vm.create_volume("proj_data")
        (tmp_path / vol1.path / "weights.bin").write_text("x")
        vol2 = vm.create_volume("proj_data")
        assert vol1.path == vol2.path
        assert os.path.exists(os.path.join(vol2.path, "weights.bin"))

    def test_volume_survives_new_manager(self, tmp_path):
        """Volumes persist across runs."""
        VolumeManager(base_dir=str(tmp_path)).create_volume("proj_data")
        assert VolumeManager(base_dir=str(tmp_path)).get_volume("proj_data") is not None

    def test_get_missing_volume(self, tmp_path):
        vm = VolumeManager(base_dir=str(tmp_path))
        assert vm.get_volume("nope") is None

    def test_list_volumes(self, tmp_path):
        """Test listing volumes."""
        vm = VolumeManager(base_dir=str(tmp_path))
        vm.create_volume("a_vol1")
        vm.create_volume("a_vol2")
        vm.create_volume("b_vol1")
        assert [v.name for v in vm.list_volumes()] == ["a_vol1", "a_vol2", "b_vol1"]
        assert [v.name for v in vm.list_volumes("a_")] == ["a_vol1", "a_vol2"]

    def test_remove_volume(self, tmp_path):
        """Test volume removal."""
        vm = VolumeManager(base_dir=str(tmp_path))
        vm.create_volume("proj_data")
        assert vm.remove_volume("proj_data") is True
        assert vm.get_volume("proj_data") is None
        assert vm.remove_volume("proj_data") is False

    @pytest.mark.parametrize("name", ["", "..", "a/b"])
    def test_invalid_name(self, tmp_path, name):
        vm = VolumeManager(base_dir=str(tmp_path))
        with pytest.raises(ValueError):
            vm.create_volume(name)

    def test_resolve_source_relative_path(self, tmp_path):
        """Test resolving relative path source."""
        vm = VolumeManager(base_dir=str(tmp_path))
        assert vm.resolve_source("./data") == str(tmp_path / "data")

    def test_resolve_target(self, tmp_path):
        """Absolute targets land under the base directory."""
        vm = VolumeManager(base_dir=str(tmp_path))
        assert vm.resolve_target("/app/data") == str(tmp_path / "app" / "data")
        assert vm.resolve_target("data", str(tmp_path / "work")) == str(tmp_path / "work" / "data")

    def test_get_volume_size(self, tmp_path):
        """Test getting volume size."""
        vm = VolumeManager(base_dir=str(tmp_path))
        vol = vm.create_volume("test-vol")

        # Create a file in the volume
        test_file = os.path.join(vol.path, "test.txt")
        with open(test_file, 'w') as f:
            f.write("Hello, World!")

        assert vm.get_volume_size("test-vol") == len("Hello, World!")

    def test_prepare_volumes_links_named_volume(self, tmp_path):
        vm = VolumeManager(base_dir=str(tmp_path))
        vol = vm.create_volume("proj_models")
        mounts = [VolumeMount(source="models", target="/models")]

        vm.prepare_volumes(mounts, {"models": vol.path})
        target = tmp_path / "models"
        assert target.is_symlink()
        assert os.path.realpath(target) == os.path.realpath(vol.path)

        # Linking again is a no-op
        vm.prepare_volumes(mounts, {"models": vol.path})
        assert target.is_symlink()

    def test_prepare_volumes_bind_mount(self, tmp_path):
        vm = VolumeManager(base_dir=str(tmp_path))
        vm.prepare_volumes([VolumeMount(source="./src", target="app/src")], {},
                           service_working_dir=str(tmp_path / "work"))
        target = tmp_path / "work" / "app" / "src"
        assert target.is_symlink()
        assert os.path.realpath(target) == os.path.realpath(tmp_path / "src")

    def test_prepare_volumes_refuses_to_clobber(self, tmp_path):
        vm = VolumeManager(base_dir=str(tmp_path))
        vol = vm.create_volume("proj_data")
        occupied = tmp_path / "data"
        occupied.mkdir()
        (occupied / "keep.txt").write_text("x")
        with pytest.raises(OSError):
            vm.prepare_volumes([VolumeMount(source="data", target="/data")], {"data": vol.path})
        assert (occupied / "keep.txt").exists()
