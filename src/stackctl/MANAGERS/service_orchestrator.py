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
Orchestration for multiple services, managing dependencies, volumes and
name resolution.

The topology is always passed in explicitly; the orchestrator only keeps
the controllers of the instances it launched.
"""
import logging
import time
from typing import Dict, List, Optional

from ..errors import StackError
from ..MODELS.service_instance import OutcomeReport, ServiceOutcome, ServiceState
from ..MODELS.service_spec import RestartPolicyCondition
from ..MODELS.settings import OrchestratorSettings
from ..MODELS.topology import Topology
from ..RUNNERS.dependency_resolver import DependencyResolver
from ..RUNNERS.runtime_driver import RuntimeDriver, VolumeBackend
from .environment_manager import EnvironmentManager
from .network_manager import NameResolver
from .service_controller import EventRouter, ServiceController
from .volume_manager import VolumeManager

logger = logging.getLogger(__name__)


class ServiceOrchestrator:
    """
    Orchestrates multiple services based on their dependencies.
    """
    def __init__(self,
                 driver: RuntimeDriver,
                 volume_backend: Optional[VolumeBackend] = None,
                 settings: Optional[OrchestratorSettings] = None,
                 base_dir: str = ".",
                 env: Optional[Dict[str, str]] = None):
        """
        Initializes the orchestrator.

        :param driver: Runtime driver materializing the instances.
        :param volume_backend: Storage for named volumes. Defaults to the
            driver when it implements VolumeBackend.
        :param settings: Timeouts and paths.
        :param base_dir: Directory relative paths (env files, bind mounts) resolve against.
        :param env: Environment every service inherits. Defaults to the process environment.
        """
        if volume_backend is None:
            if not isinstance(driver, VolumeBackend):
                raise TypeError("driver does not manage volumes; pass a volume_backend")
            volume_backend = driver
        self.driver = driver
        self.settings = settings or OrchestratorSettings()
        self.resolver = DependencyResolver()
        self.names = NameResolver()
        self.volumes = VolumeManager(volume_backend, users=self._volume_users, base_dir=base_dir)
        self.env_manager = EnvironmentManager(base_dir, inherit=env)
        self.router = EventRouter(driver)
        self.controllers: Dict[str, ServiceController] = {}
        self.startup_order: List[str] = []

    def plan(self, topology: Topology) -> List[str]:
        """
        :return: Service names in startup order.
        :raises CycleError: If the dependencies contain a cycle.
        """
        return self.resolver.resolve_order(topology)

    def up(self, topology: Topology) -> OutcomeReport:
        """
        Starts all services in dependency order.

        Independent services start concurrently; each service waits for
        its dependencies to reach running. Returns once every service is
        running, has ended for good or is backing off between relaunches
        (or ``up_timeout`` elapses).

        :raises CycleError: Before anything is created, if the plan fails.
        :return: Per-service report in startup order.
        """
        order = self.plan(topology)
        logger.info("Starting services in order: %s", ', '.join(order))
        self.router.start()

        for name in order:
            current = self.controllers.get(name)
            if current is not None and current.is_alive():
                continue
            self.controllers[name] = ServiceController(
                topology.services[name],
                driver=self.driver,
                router=self.router,
                volumes=self.volumes,
                resolver=self.names,
                env_manager=self.env_manager,
                settings=self.settings,
                dependencies=[self.controllers[d] for d in topology.services[name].depends_on],
            )

        for name in order:
            self.controllers[name].start()

        self._wait_reported(order, self.settings.up_timeout)
        self.startup_order = order
        return self._report(order)

    def down(self, topology: Topology) -> OutcomeReport:
        """
        Stops all services in the reverse of the last startup order.

        Starting instances are cancelled first, then services are stopped
        one at a time so dependents go down before their dependencies.
        Volumes are kept.

        :return: Per-service report in teardown order.
        """
        order = list(reversed(self.startup_order)) or self.resolver.teardown_order(topology)
        order += [n for n in self.controllers if n not in order]

        for name in order:
            controller = self.controllers.get(name)
            if controller is not None and controller.state in (ServiceState.PENDING, ServiceState.STARTING):
                controller.cancel()

        budget = self.settings.kill_timeout + 1.0
        for name in order:
            controller = self.controllers.get(name)
            if controller is None:
                continue
            logger.info("Stopping service: %s...", name)
            controller.cancel()
            if not controller.join(controller.grace_period + budget):
                logger.warning("Service %s did not finish stopping", name)

        report = self._report([n for n in order if n in self.controllers])
        if not any(c.is_alive() for c in self.controllers.values()):
            self.router.stop()
        self.startup_order = []
        return report

    def stop(self, name: str, wait: bool = True) -> ServiceOutcome:
        """
        Explicitly stops one service. Its restart policy will not relaunch it.

        Dependents keep running.

        :param name: The service to stop.
        :param wait: Block until the instance has stopped.
        """
        controller = self._controller(name)
        controller.stop()
        if wait:
            controller.join(controller.grace_period + self.settings.kill_timeout + 1.0)
        return self._outcome(controller)

    def resume(self, topology: Topology) -> OutcomeReport:
        """
        Relaunches ended instances the way an engine restart would:
        ``always`` services come back even if the user stopped them,
        ``unless-stopped`` services only if they were not stopped by the user.

        Does nothing once the deployment has been taken down.

        :return: Per-service report for the relaunched services.
        """
        order = [n for n in self.startup_order if n in topology.services and n in self.controllers]
        relaunch = []
        for name in order:
            controller = self.controllers[name]
            if controller.is_alive() or not controller.state.is_terminal:
                continue
            condition = controller.spec.restart_policy.condition
            if condition == RestartPolicyCondition.ALWAYS or (
                condition == RestartPolicyCondition.UNLESS_STOPPED
                and not controller.instance.user_stopped
            ):
                relaunch.append(name)

        if relaunch:
            logger.info("Resuming services: %s", ', '.join(relaunch))
            self.router.start()
        for name in relaunch:
            self.controllers[name].start()
        self._wait_reported(relaunch, self.settings.up_timeout)
        return self._report(relaunch)

    def status(self) -> Dict[str, ServiceState]:
        """
        Returns the state of every known service.

        :return: Service names and their states.
        """
        return {name: controller.state for name, controller in self.controllers.items()}

    def remove_volume(self, name: str) -> bool:
        """
        :raises VolumeInUseError: If a starting or running instance mounts it.
        """
        return self.volumes.remove(name)

    def close(self) -> None:
        """
        Stops event routing and releases the driver. Running instances are
        not stopped; call down() first.
        """
        self.router.stop()
        self.driver.close()

    def _volume_users(self, volume: str) -> List[str]:
        return [name for name, c in self.controllers.items() if c.mounts_volume(volume)]

    def _controller(self, name: str) -> ServiceController:
        controller = self.controllers.get(name)
        if controller is None:
            raise StackError(f"Service {name} has no instance")
        return controller

    def _wait_reported(self, names: List[str], timeout: Optional[float]) -> None:
        deadline = None if timeout is None else time.monotonic() + timeout
        for name in names:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            if not self.controllers[name].wait_reported(remaining):
                logger.warning("Service %s has nothing to report after %ss", name, timeout)

    def _report(self, names: List[str]) -> OutcomeReport:
        report = OutcomeReport()
        for name in names:
            report.add(self._outcome(self.controllers[name]))
        return report

    @staticmethod
    def _outcome(controller: ServiceController) -> ServiceOutcome:
        instance = controller.snapshot()
        error = instance.error
        if error is None and not controller.settled.is_set():
            if instance.state.is_terminal:
                error = f"Restarting after exit code {instance.exit_code}"
            else:
                error = f"Still {instance.state.value}"
        return ServiceOutcome(
            service=instance.service,
            state=instance.state,
            restart_count=instance.restart_count,
            exit_code=instance.exit_code,
            error=error,
        )
