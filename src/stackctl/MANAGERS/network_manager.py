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
Name resolution between services of one topology.
"""
import logging
import threading
from dataclasses import dataclass
from typing import Dict, Iterable, Optional

from ..errors import DependencyNotReadyError
from ..MODELS.service_spec import ServiceSpec

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ServiceAddress:
    """Where a running service can be reached."""

    host: str
    port: Optional[int] = None

    def __str__(self) -> str:
        return f"{self.host}:{self.port}" if self.port is not None else self.host


class NameResolver:
    """
    Maps service names to addresses. A service is only resolvable while
    it is running.
    """
    def __init__(self):
        self._addresses: Dict[str, ServiceAddress] = {}
        self._changed = threading.Condition()

    def register(self, spec: ServiceSpec, host: str) -> ServiceAddress:
        """
        Publishes the address of a service that reached the running state.

        The first published port is the service's default port: its host
        port when one is bound, else its container port.

        :param spec: The running service.
        :param host: Host the runtime driver reported for the instance.
        :return: The registered address.
        """
        port = None
        if spec.ports:
            first = spec.ports[0]
            port = first.host_port or first.container_port
        address = ServiceAddress(host=host, port=port)
        with self._changed:
            self._addresses[spec.name] = address
            self._changed.notify_all()
        logger.debug("Registered %s at %s", spec.name, address)
        return address

    def unregister(self, name: str) -> None:
        with self._changed:
            self._addresses.pop(name, None)

    def resolve(self, name: str) -> ServiceAddress:
        """
        :param name: A service name.
        :return: The service's address.
        :raises DependencyNotReadyError: If the service is not running.
        """
        with self._changed:
            address = self._addresses.get(name)
        if address is None:
            raise DependencyNotReadyError(name)
        return address

    def wait_for(self, name: str, timeout: Optional[float] = None) -> ServiceAddress:
        """
        Blocks until a service registers.

        :param name: A service name.
        :param timeout: Seconds to wait, None waits forever.
        :return: The service's address.
        :raises DependencyNotReadyError: If the timeout elapses first.
        """
        with self._changed:
            if not self._changed.wait_for(lambda: name in self._addresses, timeout=timeout):
                raise DependencyNotReadyError(name, f"not running after {timeout}s")
            return self._addresses[name]

    def discovery_env(self, names: Iterable[str]) -> Dict[str, str]:
        """
        Generates environment variables for service discovery.
        Example: DB_HOST=127.0.0.1, DB_PORT=5432

        :param names: Services to resolve, all of which must be running.
        :return: ``<NAME>_HOST`` and, when known, ``<NAME>_PORT`` per service.
        :raises DependencyNotReadyError: If any of them is not running.
        """
        env = {}
        for name in names:
            address = self.resolve(name)
            prefix = name.upper().replace('-', '_').replace('.', '_')
            env[f"{prefix}_HOST"] = address.host
            if address.port is not None:
                env[f"{prefix}_PORT"] = str(address.port)
        return env
