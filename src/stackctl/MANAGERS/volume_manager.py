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
Named volume management.

Volumes live independently of services: they are created on first
reference and only ever removed on explicit request, so data persists
past the removal of the instances that used it.
"""
import logging
import os
import threading
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional

from ..errors import VolumeInUseError
from ..MODELS.service_spec import VolumeMount
from ..RUNNERS.runtime_driver import ResolvedVolume, VolumeBackend, VolumeRef

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VolumeHandle:
    """A named volume and the backend's reference to its storage."""

    name: str
    ref: VolumeRef


class VolumeManager:
    """
    Creates and removes named volumes through a volume backend.
    """
    def __init__(self,
                 backend: VolumeBackend,
                 users: Optional[Callable[[str], Iterable[str]]] = None,
                 base_dir: str = "."):
        """
        Initializes the volume manager.

        :param backend: Creates the storage behind each volume.
        :param users: Returns the services whose active instances mount a
            volume; removal is refused while it returns anything.
        :param base_dir: The base directory for resolving relative bind mounts.
        """
        self.backend = backend
        self.users = users or (lambda name: [])
        self.base_dir = os.path.abspath(base_dir)
        self._volumes: Dict[str, VolumeHandle] = {}
        self._lock = threading.Lock()

    def ensure(self, name: str) -> VolumeHandle:
        """
        Returns the volume, creating it on first use.

        :param name: The volume name.
        :return: The handle; the same one on every call for a name.
        """
        with self._lock:
            handle = self._volumes.get(name)
            if handle is None:
                ref = self.backend.create_volume(name)
                handle = VolumeHandle(name=name, ref=ref)
                self._volumes[name] = handle
                logger.info("Created volume %s", name)
            return handle

    def adopt(self, existing: Dict[str, VolumeRef]) -> None:
        """
        Registers volumes the backend already holds, so they are neither
        created again nor unknown to remove().

        :param existing: Volume names and their backend references.
        """
        with self._lock:
            for name, ref in existing.items():
                self._volumes.setdefault(name, VolumeHandle(name=name, ref=ref))

    def remove(self, name: str) -> bool:
        """
        Removes a volume and its storage.

        :param name: The volume name.
        :return: False if the volume was never created.
        :raises VolumeInUseError: If a starting or running instance mounts it.
        """
        with self._lock:
            users = list(self.users(name))
            if users:
                raise VolumeInUseError(name, users)
            handle = self._volumes.get(name)
            if handle is None:
                return False
            self.backend.remove_volume(handle.ref)
            del self._volumes[name]
        logger.info("Removed volume %s", name)
        return True

    def get(self, name: str) -> Optional[VolumeHandle]:
        with self._lock:
            return self._volumes.get(name)

    def list(self) -> List[VolumeHandle]:
        with self._lock:
            return sorted(self._volumes.values(), key=lambda h: h.name)

    def resolve_mounts(self, mounts: Iterable[VolumeMount]) -> List[ResolvedVolume]:
        """
        Resolves the sources of a service's mounts.

        Named volumes are ensured; host paths are made absolute.

        :param mounts: The service's mounts, in order.
        :return: Mounts with resolved sources, in the same order.
        """
        resolved = []
        for mount in mounts:
            if mount.is_named_volume:
                handle = self.ensure(mount.source)
                resolved.append(ResolvedVolume(
                    source=handle.ref, target=mount.target,
                    read_only=mount.read_only, volume=handle.name,
                ))
            else:
                resolved.append(ResolvedVolume(
                    source=self.resolve_source(mount.source), target=mount.target,
                    read_only=mount.read_only,
                ))
        return resolved

    def resolve_source(self, source: str) -> str:
        """
        Resolves a bind mount's host path.

        :param source: Absolute, relative or ``~`` path.
        :return: The absolute path to the source.
        """
        source = os.path.expanduser(source)
        return os.path.abspath(os.path.join(self.base_dir, source))
