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
Lifecycle management for individual service instances, including restart
policy enforcement with exponential backoff.

Each controller owns one worker thread. Every state transition of its
instance happens on that thread; stop requests, cancellation and driver
events reach it through a single inbox queue.
"""
import dataclasses
import logging
import queue
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional, Sequence, Union

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_result,
    stop_after_attempt,
    stop_any,
    stop_when_event_set,
    wait_exponential,
)

from ..errors import DependencyNotReadyError, RuntimeDriverError
from ..MODELS.service_instance import ServiceInstance, ServiceState
from ..MODELS.service_spec import RestartPolicyCondition, ServiceSpec
from ..MODELS.settings import OrchestratorSettings
from ..RUNNERS.runtime_driver import DriverEvent, InstanceRef, RuntimeDriver
from .environment_manager import EnvironmentManager
from .network_manager import NameResolver
from .volume_manager import VolumeManager

logger = logging.getLogger(__name__)


class Control(str, Enum):
    """Requests delivered to a controller's inbox."""

    STOP = "stop"
    CANCEL = "cancel"


Message = Union[Control, DriverEvent]


@dataclass
class RunResult:
    """How one launch of an instance ended."""

    state: ServiceState
    exit_code: Optional[int] = None
    user_stopped: bool = False
    permanent: bool = False
    ran_for: Optional[float] = None

    @property
    def failed(self) -> bool:
        return self.state == ServiceState.FAILED


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class EventRouter:
    """
    Reads the driver's event stream on one thread and forwards each event
    to the controller owning the instance.
    """
    def __init__(self, driver: RuntimeDriver, poll_interval: float = 0.2):
        self.driver = driver
        self.poll_interval = poll_interval
        self._routes: Dict[InstanceRef, "ServiceController"] = {}
        self._lock = threading.Lock()
        self._running = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def bind(self, ref: InstanceRef, controller: "ServiceController") -> None:
        with self._lock:
            self._routes[ref] = controller

    def unbind(self, ref: InstanceRef) -> None:
        with self._lock:
            self._routes.pop(ref, None)

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._running.set()
        self._thread = threading.Thread(target=self._loop, name="event-router", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._running.clear()
        if self._thread:
            self._thread.join(timeout=self.poll_interval * 5)
            self._thread = None

    def _loop(self) -> None:
        while self._running.is_set():
            event = self.driver.next_event(timeout=self.poll_interval)
            if event is None:
                continue
            with self._lock:
                controller = self._routes.get(event.ref)
            if controller is None:
                logger.debug("Dropping event for unknown instance %s", event.ref)
                continue
            controller.deliver(event)


class ServiceController:
    """
    Drives one service through
    Pending -> Starting -> Running -> (Stopping -> Stopped) | Failed,
    relaunching it as its restart policy dictates.
    """
    def __init__(self,
                 spec: ServiceSpec,
                 driver: RuntimeDriver,
                 router: EventRouter,
                 volumes: VolumeManager,
                 resolver: NameResolver,
                 env_manager: EnvironmentManager,
                 settings: Optional[OrchestratorSettings] = None,
                 dependencies: Sequence["ServiceController"] = ()):
        """
        :param spec: The service to run. Never modified.
        :param driver: Runtime driver receiving create/start/stop calls.
        :param router: Routes the driver's events for our instances back to us.
        :param volumes: Resolves the service's mounts.
        :param resolver: Publishes our address and resolves dependencies.
        :param env_manager: Builds the environment for each launch.
        :param settings: Timeouts and backoff cap.
        :param dependencies: Controllers that must reach running first.
        """
        self.spec = spec
        self.driver = driver
        self.router = router
        self.volumes = volumes
        self.resolver = resolver
        self.env_manager = env_manager
        self.settings = settings or OrchestratorSettings()
        self.dependencies = list(dependencies)

        self.instance = ServiceInstance(service=spec.name)
        self.ready = threading.Event()
        self.settled = threading.Event()
        self.reported = threading.Event()

        self._inbox: "queue.Queue[Message]" = queue.Queue()
        self._halt = threading.Event()
        self._stop_requested = threading.Event()
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._launches = 0
        self._running_since: Optional[float] = None

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def state(self) -> ServiceState:
        return self.instance.state

    @property
    def grace_period(self) -> float:
        if self.spec.stop_grace_period is not None:
            return self.spec.stop_grace_period
        return self.settings.stop_grace_period

    def snapshot(self) -> ServiceInstance:
        with self._lock:
            return dataclasses.replace(self.instance)

    def mounts_volume(self, volume: str) -> bool:
        return self.state.is_active and volume in self.spec.named_volumes()

    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # Requests from other threads

    def start(self) -> None:
        """
        Launches the worker. A terminal instance is brought back through
        Starting; the restart count keeps growing.
        """
        if self.is_alive():
            return
        self._halt.clear()
        self._stop_requested.clear()
        self.ready.clear()
        self.settled.clear()
        self.reported.clear()
        with self._lock:
            self.instance.user_stopped = False
            self.instance.error = None
        self._drain_inbox()
        self._thread = threading.Thread(target=self._run, name=f"service-{self.name}", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """
        Explicit user stop. While Starting, it is applied as soon as the
        instance reaches Running.
        """
        with self._lock:
            self.instance.user_stopped = True
        self._stop_requested.set()
        self._halt.set()
        self._inbox.put(Control.STOP)

    def cancel(self) -> None:
        """
        Deployment-wide shutdown: a Starting instance goes straight to Stopping.
        """
        with self._lock:
            self.instance.user_stopped = True
        self._stop_requested.set()
        self._halt.set()
        self._inbox.put(Control.CANCEL)

    def deliver(self, event: DriverEvent) -> None:
        self._inbox.put(event)

    def join(self, timeout: Optional[float] = None) -> bool:
        """
        :return: True if the worker has finished.
        """
        if self._thread is None:
            return True
        self._thread.join(timeout)
        return not self._thread.is_alive()

    def wait_reported(self, timeout: Optional[float] = None) -> bool:
        """
        Waits until up() has something to report: the instance is running,
        has ended for good, or is backing off before a relaunch (itself or
        one of its dependencies).
        """
        return self.reported.wait(timeout)

    # Worker thread

    def _run(self) -> None:
        try:
            if self._await_dependencies():
                result = self._retrying()(self._launch_once)
                while self._relaunch_after_long_run(result):
                    delay = self._reset_delay()
                    logger.info(
                        "[%s] Exited after %.1fs up, relaunching in %.1fs (restart %d)",
                        self.name, result.ran_for, delay, self.instance.restart_count + 1,
                    )
                    self._backoff(delay)
                    result = self._retrying()(self._launch_once)
                self._finish(result)
        except Exception as e:
            logger.exception("[%s] Lifecycle worker crashed", self.name)
            with self._lock:
                self.instance.error = f"Internal error: {e}"
            self._transition(ServiceState.FAILED)
        finally:
            self.settled.set()
            self.reported.set()

    def _await_dependencies(self) -> bool:
        for dep in self.dependencies:
            while not dep.settled.wait(0.05):
                if self._halt.is_set():
                    logger.info("[%s] Cancelled while waiting for %s", self.name, dep.name)
                    return False
                if dep.reported.is_set():
                    # Behind a dependency that is between relaunches
                    self.reported.set()
            if self._halt.is_set():
                return False
            if not dep.ready.is_set():
                with self._lock:
                    self.instance.error = str(
                        DependencyNotReadyError(dep.name, f"ended {dep.state.value} without running")
                    )
                logger.error("[%s] Not starting: %s", self.name, self.instance.error)
                return False
        return True

    def _retrying(self) -> Retrying:
        """
        Relaunch loop for consecutive short runs. It ends, handing the result
        back to _run, as soon as one run stays up for ``restart_reset_after``;
        the next loop starts from the base delay with a fresh retry ceiling.
        """
        policy = self.spec.restart_policy
        stops = [stop_when_event_set(self._halt), self._stop_after_long_run]
        if policy.condition == RestartPolicyCondition.ON_FAILURE and policy.max_retries > 0:
            stops.append(stop_after_attempt(policy.max_retries + 1))
        return Retrying(
            retry=retry_if_result(self._should_relaunch),
            stop=stop_any(*stops),
            wait=wait_exponential(
                multiplier=self._base_delay(),
                max=self.settings.restart_max_delay,
            ),
            sleep=self._backoff,
            before_sleep=self._log_relaunch,
            retry_error_callback=lambda state: state.outcome.result(),
        )

    def _should_relaunch(self, result: RunResult) -> bool:
        if result.permanent:
            return False
        return self.spec.restart_policy.should_relaunch(
            failed=result.failed, user_stopped=result.user_stopped
        )

    def _ran_long_enough(self, result: RunResult) -> bool:
        return result.ran_for is not None and result.ran_for >= self.settings.restart_reset_after

    def _relaunch_after_long_run(self, result: RunResult) -> bool:
        return (
            self._ran_long_enough(result)
            and not self._halt.is_set()
            and self._should_relaunch(result)
        )

    def _stop_after_long_run(self, retry_state: RetryCallState) -> bool:
        return self._ran_long_enough(retry_state.outcome.result())

    def _base_delay(self) -> float:
        delay = self.spec.restart_policy.delay
        return delay if delay > 0 else 1.0

    def _reset_delay(self) -> float:
        return min(self._base_delay(), self.settings.restart_max_delay)

    def _backoff(self, seconds: float) -> None:
        # Interrupted by stop/cancel
        self._halt.wait(seconds)

    def _log_relaunch(self, retry_state: RetryCallState) -> None:
        self.reported.set()
        logger.info(
            "[%s] Relaunching in %.1fs (restart %d)",
            self.name, retry_state.next_action.sleep, self.instance.restart_count + 1,
        )

    def _finish(self, result: RunResult) -> None:
        policy = self.spec.restart_policy
        exhausted = (
            not self._halt.is_set()
            and self._should_relaunch(result)
            and policy.condition == RestartPolicyCondition.ON_FAILURE
        )
        if exhausted:
            with self._lock:
                self.instance.error = (
                    f"Gave up after {policy.max_retries} consecutive restarts"
                    f" (last exit code {self.instance.exit_code})"
                )
            logger.error("[%s] %s", self.name, self.instance.error)

    def _launch_once(self) -> RunResult:
        if self._halt.is_set():
            return RunResult(state=self.state, exit_code=self.instance.exit_code, user_stopped=True)

        with self._lock:
            if self._launches:
                self.instance.restart_count += 1
            self._launches += 1
            self.instance.exit_code = None
            self.instance.error = None
            self.instance.ref = None
        self._running_since = None
        self._transition(ServiceState.STARTING)

        ref = None
        try:
            volumes = self.volumes.resolve_mounts(self.spec.volumes)
            discovery = self.resolver.discovery_env(self.spec.depends_on)
            env = self.env_manager.get_merged_environment(self.spec, discovery)
            ref = self.driver.create(self.spec, env, volumes)
            with self._lock:
                self.instance.ref = ref
            self.router.bind(ref, self)
            self.driver.start(ref)
        except DependencyNotReadyError as e:
            return self._launch_failed(ref, str(e), permanent=False)
        except RuntimeDriverError as e:
            return self._launch_failed(ref, str(e), permanent=e.permanent)

        with self._lock:
            self.instance.started_at = _utcnow()
        return self._supervise(ref)

    def _launch_failed(self, ref: Optional[InstanceRef], message: str, permanent: bool) -> RunResult:
        logger.error("[%s] Failed to start: %s", self.name, message)
        with self._lock:
            self.instance.error = message
        self._transition(ServiceState.FAILED)
        if ref is not None:
            self._release(ref)
        return RunResult(state=ServiceState.FAILED, permanent=permanent)

    def _supervise(self, ref: InstanceRef) -> RunResult:
        deadline = None
        if self.settings.start_timeout is not None:
            deadline = time.monotonic() + self.settings.start_timeout

        while True:
            timeout = None
            if self.state == ServiceState.STARTING and deadline is not None:
                timeout = max(0.0, deadline - time.monotonic())
            message = self._next(timeout)

            if message is None:
                return self._start_timed_out(ref)

            if message is Control.CANCEL:
                return self._stop_instance(ref)
            if message is Control.STOP:
                if self.state == ServiceState.RUNNING:
                    return self._stop_instance(ref)
                # Applied once Running
                continue

            if message.ref != ref:
                continue
            if message.running:
                if self.state == ServiceState.STARTING:
                    self._transition(ServiceState.RUNNING)
                    self._running_since = time.monotonic()
                    self.resolver.register(self.spec, self.driver.address(ref))
                    self.ready.set()
                    self.settled.set()
                    self.reported.set()
                    if self._stop_requested.is_set():
                        return self._stop_instance(ref)
                continue

            return self._exited(ref, message.exit_code)

    def _exited(self, ref: InstanceRef, exit_code: int) -> RunResult:
        self.resolver.unregister(self.name)
        state = ServiceState.FAILED if exit_code != 0 else ServiceState.STOPPED
        with self._lock:
            self.instance.exit_code = exit_code
        logger.info("[%s] Exited with code %s", self.name, exit_code)
        ran_for = None
        if self._running_since is not None:
            ran_for = time.monotonic() - self._running_since
        self._transition(state)
        self._release(ref)
        return RunResult(state=state, exit_code=exit_code, ran_for=ran_for)

    def _start_timed_out(self, ref: InstanceRef) -> RunResult:
        message = f"Did not reach running within {self.settings.start_timeout}s"
        logger.warning("[%s] %s, killing it", self.name, message)
        exit_code = self._kill(ref)
        with self._lock:
            self.instance.error = message
            self.instance.exit_code = exit_code
        self._transition(ServiceState.FAILED)
        self._release(ref)
        return RunResult(state=ServiceState.FAILED, exit_code=exit_code)

    def _stop_instance(self, ref: InstanceRef) -> RunResult:
        """
        Stops with the grace period, escalating to a forced kill.
        """
        self._transition(ServiceState.STOPPING)
        self.resolver.unregister(self.name)
        grace = self.grace_period
        try:
            self.driver.stop(ref, grace)
        except RuntimeDriverError as e:
            logger.warning("[%s] Stop failed, escalating: %s", self.name, e)
            grace = 0.0

        exit_code = self._await_exit(ref, grace)
        if exit_code is None:
            logger.warning("[%s] Did not stop within %.1fs, killing it", self.name, grace)
            exit_code = self._kill(ref)

        if exit_code is None:
            with self._lock:
                self.instance.error = "Termination was not confirmed by the runtime"
            self._transition(ServiceState.FAILED)
            self._release(ref)
            return RunResult(state=ServiceState.FAILED, user_stopped=True)

        with self._lock:
            self.instance.exit_code = exit_code
        self._transition(ServiceState.STOPPED)
        self._release(ref)
        return RunResult(state=ServiceState.STOPPED, exit_code=exit_code, user_stopped=True)

    def _kill(self, ref: InstanceRef) -> Optional[int]:
        try:
            self.driver.force_kill(ref)
        except RuntimeDriverError as e:
            logger.error("[%s] Forced kill failed: %s", self.name, e)
            return None
        return self._await_exit(ref, self.settings.kill_timeout)

    def _await_exit(self, ref: InstanceRef, timeout: float) -> Optional[int]:
        deadline = time.monotonic() + timeout
        while True:
            message = self._next(max(0.0, deadline - time.monotonic()))
            if message is None:
                return None
            if isinstance(message, DriverEvent) and message.ref == ref and not message.running:
                return message.exit_code

    def _release(self, ref: InstanceRef) -> None:
        """
        Unbinds the instance and removes it from the driver. An instance whose
        termination was never confirmed is released too: a driver that refuses
        to remove it keeps it, and close() kills it.
        """
        self.router.unbind(ref)
        try:
            self.driver.remove(ref)
        except RuntimeDriverError as e:
            logger.warning("[%s] Could not remove instance %s: %s", self.name, ref, e)

    def _next(self, timeout: Optional[float]) -> Optional[Message]:
        try:
            return self._inbox.get(timeout=timeout)
        except queue.Empty:
            return None

    def _drain_inbox(self) -> None:
        while True:
            try:
                self._inbox.get_nowait()
            except queue.Empty:
                return

    def _transition(self, state: ServiceState) -> None:
        with self._lock:
            previous = self.instance.state
            self.instance.state = state
        if previous != state:
            logger.info("[%s] %s -> %s", self.name, previous.value, state.value)
