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
Boundary between the orchestrator and the engine that runs instances.

The orchestrator only ever issues the calls below and reads the event
stream. Every driver failure must be raised as a RuntimeDriverError.
"""
import queue
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional

from ..MODELS.service_spec import ServiceSpec

InstanceRef = str
VolumeRef = str


@dataclass(frozen=True)
class ResolvedVolume:
    """A mount with its source resolved to a volume reference or host path."""

    source: str
    target: str
    read_only: bool = False
    volume: Optional[str] = None


@dataclass(frozen=True)
class DriverEvent:
    """
    Status change reported by the driver.

    Either ``running`` is True, or ``exit_code`` holds the exit status.
    """

    ref: InstanceRef
    running: bool = False
    exit_code: Optional[int] = None

    @classmethod
    def started(cls, ref: InstanceRef) -> "DriverEvent":
        return cls(ref=ref, running=True)

    @classmethod
    def exited(cls, ref: InstanceRef, exit_code: int) -> "DriverEvent":
        return cls(ref=ref, exit_code=exit_code)


class VolumeBackend(ABC):
    """Creates and removes the storage behind named volumes."""

    @abstractmethod
    def create_volume(self, name: str) -> VolumeRef:
        """
        :param name: Volume name, unique within the topology.
        :return: Opaque reference to the backing storage.
        """

    @abstractmethod
    def remove_volume(self, ref: VolumeRef) -> None:
        """Deletes the backing storage."""


class RuntimeDriver(ABC):
    """Materializes and controls service instances."""

    @abstractmethod
    def create(self,
               spec: ServiceSpec,
               env: Dict[str, str],
               volumes: List[ResolvedVolume]) -> InstanceRef:
        """
        Creates an instance without starting it.

        :param spec: The service to instantiate.
        :param env: Fully resolved environment.
        :param volumes: Mounts with resolved sources.
        :return: Reference used in all later calls and events.
        """

    @abstractmethod
    def start(self, ref: InstanceRef) -> None:
        """Starts a created instance; running/exit are reported as events."""

    @abstractmethod
    def stop(self, ref: InstanceRef, grace_period: float) -> None:
        """Asks the instance to terminate; the exit is reported as an event."""

    @abstractmethod
    def force_kill(self, ref: InstanceRef) -> None:
        """Terminates the instance immediately."""

    @abstractmethod
    def remove(self, ref: InstanceRef) -> None:
        """Releases an exited instance."""

    @abstractmethod
    def next_event(self, timeout: Optional[float] = None) -> Optional[DriverEvent]:
        """
        Blocks for the next event.

        :param timeout: Seconds to wait, None waits forever.
        :return: The event, or None on timeout.
        """

    def address(self, ref: InstanceRef) -> str:
        """
        Host other services use to reach the instance.
        """
        return "127.0.0.1"

    def close(self) -> None:
        """Releases driver resources, killing any instance it still holds."""


class QueuedEventsDriver(RuntimeDriver):
    """
    Base for drivers that push events from their own threads.
    """
    def __init__(self):
        self._events: "queue.Queue[DriverEvent]" = queue.Queue()

    def emit(self, event: DriverEvent) -> None:
        self._events.put(event)

    def next_event(self, timeout: Optional[float] = None) -> Optional[DriverEvent]:
        try:
            return self._events.get(timeout=timeout)
        except queue.Empty:
            return None
