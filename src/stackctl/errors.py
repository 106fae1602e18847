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
Error classes for stackctl.

Two families matter to callers:
- Planning errors (SpecError, CycleError) are fatal. They abort an `up`
  before any instance is created.
- Runtime errors (DependencyNotReadyError, VolumeInUseError,
  RuntimeDriverError) are local to one service or one volume and are
  reported per service instead of failing the whole operation.
"""
from typing import Iterable, List, Optional


class StackError(Exception):
    """Base exception for stackctl."""
    pass


class SpecError(StackError):
    """
    The configuration document is malformed or ambiguous.

    No partial topology is ever produced when this is raised.
    """
    pass


class CycleError(StackError):
    """
    The dependency graph contains a cycle.

    :param cycle: Service names participating in the cycle, in edge order.
    """
    def __init__(self, cycle: Iterable[str]):
        self.cycle: List[str] = list(cycle)
        super().__init__(
            f"Circular dependency detected: {' -> '.join(self.cycle + self.cycle[:1])}"
        )


class DependencyNotReadyError(StackError):
    """
    A service was resolved before it reached the running state.

    Recoverable: the caller may retry once the dependency is running.
    """
    def __init__(self, service: str, reason: Optional[str] = None):
        self.service = service
        message = f"Service {service} is not running"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class VolumeInUseError(StackError):
    """
    A volume removal was blocked by instances still referencing it.
    """
    def __init__(self, volume: str, services: Iterable[str]):
        self.volume = volume
        self.services: List[str] = sorted(services)
        super().__init__(
            f"Volume {volume} is in use by: {', '.join(self.services)}"
        )


class RuntimeDriverError(StackError):
    """
    Wraps any failure reported by the runtime driver.

    Transient errors are eligible for restart-policy driven retry.
    Permanent errors are surfaced immediately.
    """
    transient = True

    def __init__(self, message: str, transient: Optional[bool] = None):
        super().__init__(message)
        if transient is not None:
            self.transient = transient

    @property
    def permanent(self) -> bool:
        return not self.transient


class ImageNotFoundError(RuntimeDriverError):
    """The image (or, for the process driver, the executable) does not exist."""
    transient = False
