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
Shared fixtures: an in-memory runtime driver and helpers to build topologies.
"""
import threading
from collections import defaultdict
from typing import Dict, List

import pytest

from stackctl.errors import RuntimeDriverError
from stackctl.MANAGERS.service_orchestrator import ServiceOrchestrator
from stackctl.MODELS.service_spec import ServiceSpec
from stackctl.MODELS.settings import OrchestratorSettings
from stackctl.MODELS.topology import Topology, VolumeSpec
from stackctl.RUNNERS.runtime_driver import DriverEvent, QueuedEventsDriver, VolumeBackend

RUN = "run"      # reports running, exits 0 when stopped
HANG = "hang"    # never reports running
HOLD = "hold"    # reports running only when release() is called


class FakeDriver(QueuedEventsDriver, VolumeBackend):
    """
    Records every call. What an instance does after start() is scripted
    per service: RUN, HANG, HOLD, or an exit code reported right after
    the running event.
    """
    def __init__(self):
        super().__init__()
        self.calls: List[tuple] = []
        self.scripts: Dict[str, List] = defaultdict(list)
        self.create_errors: Dict[str, List[Exception]] = defaultdict(list)
        self.ignore_stop = set()
        self.ignore_kill = set()
        self.services: Dict[str, str] = {}
        self.envs: Dict[str, Dict[str, str]] = {}
        self.mounts: Dict[str, list] = {}
        self.volumes: Dict[str, str] = {}
        self._held: Dict[str, str] = {}
        self._count = 0
        self._lock = threading.Lock()

    def script(self, service: str, *behaviours) -> None:
        self.scripts[service].extend(behaviours)

    def calls_of(self, op: str) -> List[str]:
        with self._lock:
            return [name for (o, name) in self.calls if o == op]

    def release(self, service: str) -> None:
        ref = self._held.pop(service)
        self.emit(DriverEvent.started(ref))

    def exit(self, service: str, code: int) -> None:
        """Makes the current instance of a service exit on its own."""
        with self._lock:
            refs = [r for r, s in self.services.items() if s == service]
        self.emit(DriverEvent.exited(refs[-1], code))

    def _record(self, op: str, name: str) -> None:
        with self._lock:
            self.calls.append((op, name))

    def create(self, spec, env, volumes):
        self._record("create", spec.name)
        if self.create_errors[spec.name]:
            raise self.create_errors[spec.name].pop(0)
        with self._lock:
            self._count += 1
            ref = f"{spec.name}-{self._count}"
            self.services[ref] = spec.name
        self.envs[spec.name] = dict(env)
        self.mounts[spec.name] = list(volumes)
        return ref

    def start(self, ref):
        name = self.services[ref]
        self._record("start", name)
        behaviour = self.scripts[name].pop(0) if self.scripts[name] else RUN
        if behaviour == HANG:
            return
        if behaviour == HOLD:
            self._held[name] = ref
            return
        self.emit(DriverEvent.started(ref))
        if isinstance(behaviour, int):
            self.emit(DriverEvent.exited(ref, behaviour))

    def stop(self, ref, grace_period):
        name = self.services[ref]
        self._record("stop", name)
        if name not in self.ignore_stop:
            self.emit(DriverEvent.exited(ref, 0))

    def force_kill(self, ref):
        name = self.services[ref]
        self._record("kill", name)
        if name not in self.ignore_kill:
            self.emit(DriverEvent.exited(ref, 137))

    def remove(self, ref):
        self._record("remove", self.services[ref])

    def create_volume(self, name):
        self._record("create_volume", name)
        ref = f"fake://{name}"
        self.volumes[name] = ref
        return ref

    def remove_volume(self, ref):
        name = ref[len("fake://"):]
        if name not in self.volumes:
            raise RuntimeDriverError(f"no volume {name}", transient=False)
        self._record("remove_volume", name)
        del self.volumes[name]


def make_topology(**services) -> Topology:
    """
    Builds a topology from keyword arguments, one per service, in order.
    Named volumes the services mount are declared automatically.
    """
    specs = {}
    for name, fields in services.items():
        fields = dict(fields)
        fields.setdefault("image", f"{name}:latest")
        specs[name] = ServiceSpec(name=name, **fields)
    volumes = {
        v: VolumeSpec(name=v) for spec in specs.values() for v in spec.named_volumes()
    }
    return Topology(name="test", services=specs, volumes=volumes)


@pytest.fixture
def driver():
    return FakeDriver()


@pytest.fixture
def settings():
    return OrchestratorSettings(
        stop_grace_period=0.2,
        kill_timeout=1.0,
        start_timeout=2.0,
        restart_max_delay=0.05,
        up_timeout=5.0,
    )


@pytest.fixture
def orchestrator(driver, settings):
    orch = ServiceOrchestrator(driver, settings=settings, env={})
    yield orch
    orch.down(Topology())
    orch.close()
