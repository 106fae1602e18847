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
Runtime driver that runs each service as a native host process,
with log redirection and named volumes kept as plain directories.
"""
import logging
import os
import re
import shutil
import subprocess
import threading
import uuid
from dataclasses import dataclass
from typing import IO, Dict, List, Optional

import psutil

from ..errors import ImageNotFoundError, RuntimeDriverError
from ..MODELS.service_spec import ServiceSpec
from .runtime_driver import (
    DriverEvent,
    InstanceRef,
    QueuedEventsDriver,
    ResolvedVolume,
    VolumeBackend,
    VolumeRef,
)

logger = logging.getLogger(__name__)


@dataclass
class _ProcessInstance:
    name: str
    command: List[str]
    env: Dict[str, str]
    working_dir: Optional[str]
    log_file: str
    process: Optional[subprocess.Popen] = None
    log_handle: Optional[IO[str]] = None


def volume_env_var(target: str) -> str:
    """
    Name of the variable exposing a mount's host path to the process,
    e.g. ``/var/lib/data`` -> ``STACKCTL_VOLUME_VAR_LIB_DATA``.
    """
    return "STACKCTL_VOLUME_" + re.sub(r'[^A-Za-z0-9]+', '_', target).strip('_').upper()


class ProcessDriver(QueuedEventsDriver, VolumeBackend):
    """
    Runs ``entrypoint + command`` of a service as a subprocess.

    Images and build contexts are only labels here: the command must be
    runnable on the host.
    """
    def __init__(self, state_dir: str = ".stackctl"):
        """
        :param state_dir: Directory holding ``logs/`` and ``volumes/``.
        """
        super().__init__()
        self.state_dir = os.path.abspath(state_dir)
        self.logs_dir = os.path.join(self.state_dir, "logs")
        self.volumes_root = os.path.join(self.state_dir, "volumes")
        self._instances: Dict[InstanceRef, _ProcessInstance] = {}
        self._lock = threading.Lock()

    def create(self,
               spec: ServiceSpec,
               env: Dict[str, str],
               volumes: List[ResolvedVolume]) -> InstanceRef:
        command = list(spec.entrypoint) + list(spec.command)
        if not command:
            raise ImageNotFoundError(f"Service {spec.name} has no command to run")
        if shutil.which(command[0]) is None and not os.path.isfile(command[0]):
            raise ImageNotFoundError(f"Executable {command[0]} not found for service {spec.name}")

        env = dict(env)
        for mount in volumes:
            env[volume_env_var(mount.target)] = mount.source

        ref = f"{spec.name}-{uuid.uuid4().hex[:12]}"
        with self._lock:
            self._instances[ref] = _ProcessInstance(
                name=spec.name,
                command=command,
                env=env,
                working_dir=spec.working_dir,
                log_file=os.path.join(self.logs_dir, f"{spec.name}.log"),
            )
        logger.debug("[%s] Created instance %s", spec.name, ref)
        return ref

    def start(self, ref: InstanceRef) -> None:
        instance = self._get(ref)
        if instance.process is not None:
            raise RuntimeDriverError(f"Instance {ref} was already started", transient=False)

        try:
            # Ensure working_dir exists
            if instance.working_dir:
                os.makedirs(instance.working_dir, exist_ok=True)
            os.makedirs(self.logs_dir, exist_ok=True)
            instance.log_handle = open(instance.log_file, 'a')
        except OSError as e:
            raise RuntimeDriverError(f"[{instance.name}] Cannot prepare to start: {e}") from e

        logger.info("[%s] Starting command: %s", instance.name, ' '.join(instance.command))
        try:
            instance.process = subprocess.Popen(
                instance.command,
                env=instance.env,
                cwd=instance.working_dir,
                stdout=instance.log_handle,
                stderr=subprocess.STDOUT,
                text=True,
                # Avoid shell=True for security reasons (CWE-78)
                shell=False
            )
        except (FileNotFoundError, PermissionError) as e:
            instance.log_handle.close()
            raise ImageNotFoundError(f"[{instance.name}] Failed to start: {e}") from e
        except OSError as e:
            instance.log_handle.close()
            raise RuntimeDriverError(f"[{instance.name}] Failed to start: {e}") from e

        self.emit(DriverEvent.started(ref))
        threading.Thread(
            target=self._watch, args=(ref, instance), name=f"watch-{ref}", daemon=True
        ).start()

    def _watch(self, ref: InstanceRef, instance: _ProcessInstance) -> None:
        exit_code = instance.process.wait()
        if instance.log_handle:
            instance.log_handle.close()
        logger.debug("[%s] Process exited with %s", instance.name, exit_code)
        self.emit(DriverEvent.exited(ref, exit_code))

    def stop(self, ref: InstanceRef, grace_period: float) -> None:
        """
        Sends SIGTERM; the caller escalates to force_kill after ``grace_period``.
        """
        process = self._get(ref).process
        if process is None or process.poll() is not None:
            return
        try:
            process.terminate()
        except ProcessLookupError:
            pass
        except OSError as e:
            raise RuntimeDriverError(f"Cannot stop {ref}: {e}") from e

    def force_kill(self, ref: InstanceRef) -> None:
        """
        Kills the process and every process it spawned.
        """
        process = self._get(ref).process
        if process is None or process.poll() is not None:
            return
        try:
            parent = psutil.Process(process.pid)
            targets = parent.children(recursive=True) + [parent]
        except psutil.NoSuchProcess:
            return
        for target in targets:
            try:
                target.kill()
            except psutil.NoSuchProcess:
                continue
            except psutil.Error as e:
                raise RuntimeDriverError(f"Cannot kill {ref}: {e}") from e

    def remove(self, ref: InstanceRef) -> None:
        instance = self._get(ref)
        if instance.process is not None and instance.process.poll() is None:
            raise RuntimeDriverError(f"Instance {ref} is still running", transient=False)
        with self._lock:
            self._instances.pop(ref, None)

    def create_volume(self, name: str) -> VolumeRef:
        path = os.path.join(self.volumes_root, name)
        try:
            os.makedirs(path, exist_ok=True)
        except OSError as e:
            raise RuntimeDriverError(f"Cannot create volume {name}: {e}") from e
        logger.debug("Volume %s backed by %s", name, path)
        return path

    def list_volumes(self) -> Dict[str, VolumeRef]:
        """
        Volumes left on disk by earlier runs.
        """
        if not os.path.isdir(self.volumes_root):
            return {}
        return {
            name: os.path.join(self.volumes_root, name)
            for name in sorted(os.listdir(self.volumes_root))
            if os.path.isdir(os.path.join(self.volumes_root, name))
        }

    def remove_volume(self, ref: VolumeRef) -> None:
        try:
            shutil.rmtree(ref)
        except FileNotFoundError:
            pass
        except OSError as e:
            raise RuntimeDriverError(f"Cannot remove volume at {ref}: {e}") from e

    def close(self) -> None:
        """
        Kills whatever is still running.
        """
        with self._lock:
            refs = list(self._instances)
        for ref in refs:
            self.force_kill(ref)

    def _get(self, ref: InstanceRef) -> _ProcessInstance:
        with self._lock:
            instance = self._instances.get(ref)
        if instance is None:
            raise RuntimeDriverError(f"Unknown instance {ref}", transient=False)
        return instance
