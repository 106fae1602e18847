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
Runtime state of service instances and the reports returned by up/down.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional


class ServiceState(str, Enum):
    """Lifecycle state of a service instance."""

    PENDING = "pending"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ServiceState.STOPPED, ServiceState.FAILED)

    @property
    def is_active(self) -> bool:
        """Active instances hold on to the volumes they mount."""
        return self in (ServiceState.STARTING, ServiceState.RUNNING)


@dataclass
class ServiceInstance:
    """Runtime binding of a service to an instance in the runtime driver."""

    service: str
    state: ServiceState = ServiceState.PENDING
    ref: Optional[str] = None
    exit_code: Optional[int] = None
    restart_count: int = 0
    started_at: Optional[str] = None
    error: Optional[str] = None
    user_stopped: bool = False


@dataclass
class ServiceOutcome:
    """What happened to one service during up or down."""

    service: str
    state: ServiceState
    restart_count: int = 0
    exit_code: Optional[int] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.state != ServiceState.FAILED


@dataclass
class OutcomeReport:
    """Per-service report, in the order the services were processed."""

    outcomes: List[ServiceOutcome] = field(default_factory=list)

    def add(self, outcome: ServiceOutcome) -> None:
        self.outcomes.append(outcome)

    @property
    def succeeded(self) -> bool:
        return all(o.ok for o in self.outcomes)

    @property
    def failed(self) -> List[ServiceOutcome]:
        return [o for o in self.outcomes if not o.ok]

    def states(self) -> Dict[str, ServiceState]:
        return {o.service: o.state for o in self.outcomes}

    def __getitem__(self, service: str) -> ServiceOutcome:
        for outcome in self.outcomes:
            if outcome.service == service:
                return outcome
        raise KeyError(service)
