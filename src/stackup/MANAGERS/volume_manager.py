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
Volume management for services: persistent named volumes stored as
directories, and linking them to mount targets.

Volumes are never deleted as part of bringing a stack up or down. Removal
is a separate, explicit operation.
"""
import logging
import os
import shutil
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional

from ..MODELS.service_definition import VolumeMount

logger = logging.getLogger(__name__)


@dataclass
class NamedVolume:
    """A named volume and where its data lives on the host."""
    name: str
    path: str
    created: str


class VolumeManager:
    """
    Manages named volumes under a volumes root directory.
    """
    def __init__(self, base_dir: str = ".", volumes_root: str = ".stackup/volumes"):
        """
        Initializes the volume manager.

        :param base_dir: The base directory for resolving relative paths.
        :param volumes_root: The root directory for volume storage, relative to base_dir.
        """
        self.base_dir = os.path.abspath(base_dir)
        self.volumes_root = os.path.abspath(os.path.join(base_dir, volumes_root))
        os.makedirs(self.volumes_root, exist_ok=True)

    def create_volume(self, name: str) -> NamedVolume:
        """
        Creates a volume, or returns the existing one with that name.

        :param name: The project-scoped volume name.
        :return: The volume.
        :raises OSError: If the directory cannot be created.
        """
        path = self._volume_path(name)
        if os.path.isdir(path):
            return self._describe(name, path)
        os.makedirs(path, exist_ok=True)
        logger.info("Created volume %s at %s", name, path)
        return self._describe(name, path)

    def get_volume(self, name: str) -> Optional[NamedVolume]:
        path = self._volume_path(name)
        if not os.path.isdir(path):
            return None
        return self._describe(name, path)

    def list_volumes(self, prefix: str = "") -> List[NamedVolume]:
        """
        Lists volumes, optionally only those whose name starts with prefix.
        """
        volumes = []
        for entry in sorted(os.listdir(self.volumes_root)):
            path = os.path.join(self.volumes_root, entry)
            if os.path.isdir(path) and entry.startswith(prefix):
                volumes.append(self._describe(entry, path))
        return volumes

    def remove_volume(self, name: str) -> bool:
        """
        Deletes a volume and all of its data.

        :param name: The project-scoped volume name.
        :return: False if there was no such volume.
        """
        path = self._volume_path(name)
        if not os.path.isdir(path):
            return False
        shutil.rmtree(path)
        logger.info("Removed volume %s", name)
        return True

    def get_volume_size(self, name: str) -> int:
        """Total size in bytes of the files in a volume."""
        total = 0
        for root, _, files in os.walk(self._volume_path(name)):
            for f in files:
                fp = os.path.join(root, f)
                if not os.path.islink(fp):
                    total += os.path.getsize(fp)
        return total

    def prepare_volumes(self,
                        mounts: List[VolumeMount],
                        volume_paths: Dict[str, str],
                        service_working_dir: Optional[str] = None):
        """
        Makes each mount target a symlink to its source.

        :param mounts: List of volume mounts.
        :param volume_paths: Host paths of the named volumes, by declared name.
        :param service_working_dir: The directory where the service will run.
        """
        for mount in mounts:
            if mount.is_named:
                source_path = volume_paths[mount.source]
            else:
                source_path = self.resolve_source(mount.source)
            target_path = self.resolve_target(mount.target, service_working_dir)

            if not os.path.exists(source_path):
                os.makedirs(source_path, exist_ok=True)

            logger.debug("Mapping volume: %s -> %s", source_path, target_path)

            target_parent = os.path.dirname(target_path)
            if target_parent:
                os.makedirs(target_parent, exist_ok=True)

            if os.path.islink(target_path):
                if os.path.realpath(target_path) == os.path.realpath(source_path):
                    continue
                os.unlink(target_path)
            elif os.path.isdir(target_path):
                # Never clobber real data at a mount target
                if os.listdir(target_path):
                    raise OSError(f"Mount target {target_path} exists and is not empty")
                os.rmdir(target_path)
            elif os.path.exists(target_path):
                raise OSError(f"Mount target {target_path} exists and is a file")

            os.symlink(source_path, target_path, target_is_directory=os.path.isdir(source_path))

    def resolve_source(self, source: str) -> str:
        """
        Resolves the host path of a bind mount source.

        :param source: The source path.
        :return: The absolute path to the source.
        """
        return os.path.abspath(os.path.join(self.base_dir, os.path.expanduser(source)))

    def resolve_target(self, target: str, working_dir: Optional[str] = None) -> str:
        """
        Resolves the target path of a volume.
        Absolute targets are placed under base_dir, since services are not
        chrooted.

        :param target: The target path inside the service's view.
        :param working_dir: The working directory of the service.
        :return: The absolute path to the target.
        """
        if target.startswith('/') or target.startswith('\\'):
            return os.path.abspath(os.path.join(self.base_dir, target.lstrip('/\\')))

        root = working_dir if working_dir else self.base_dir
        return os.path.abspath(os.path.join(root, target))

    def _volume_path(self, name: str) -> str:
        if not name or os.sep in name or name in ('.', '..'):
            raise ValueError(f"Invalid volume name: {name!r}")
        return os.path.join(self.volumes_root, name)

    @staticmethod
    def _describe(name: str, path: str) -> NamedVolume:
        created = datetime.fromtimestamp(os.stat(path).st_mtime, timezone.utc)
        return NamedVolume(name=name, path=path, created=created.isoformat().replace("+00:00", "Z"))
