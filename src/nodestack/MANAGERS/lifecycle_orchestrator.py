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
Lifecycle orchestration for the node stack: the stopped -> starting -> running
-> stopping -> stopped state machine, readiness-gated startup and live status.
"""
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, Optional, Set, Tuple

from ..DRIVERS.compose_driver import ComposeDriver
from ..DRIVERS.container_engine import ComposeCliEngine, ContainerEngine
from ..errors import ConfigError, DriverError, ProbeTimeout
from ..MODELS.log_line import LogLine
from ..MODELS.service_descriptor import ServiceDescriptor, default_topology, order_by_rank
from ..MODELS.stack_config import StackConfig, validate_block_tip
from ..MODELS.stack_state import HealthStatus, StackPhase, StackSnapshot, StackState, StackStatus
from .log_streamer import FollowSession, LogStreamer
from .readiness_prober import ReadinessProber

logger = logging.getLogger(__name__)

ACTIVE_PHASES = (StackPhase.STARTING, StackPhase.RUNNING)
SETTLED_PHASES = (StackPhase.STOPPED, StackPhase.RUNNING, StackPhase.FAILED)


class LifecycleOrchestrator:
    """
    Owns the state of one stack and sequences its transitions.

    ``start`` and ``stop`` are serialized by a transition lock. Readers
    (``status``, ``logs``, ``urls``) never take that lock; they read
    ``StackState`` through a separate state lock and get a consistent copy.

    While running, a daemon monitor thread re-checks every service each
    ``monitor_interval`` seconds and moves the stack to ``failed`` when a
    service that was healthy stops answering.
    """

    def __init__(self,
                 config: StackConfig,
                 driver: ComposeDriver,
                 prober: ReadinessProber,
                 streamer: LogStreamer,
                 topology: Optional[List[ServiceDescriptor]] = None):
        """
        Initializes the orchestrator.

        :param config: Immutable stack configuration.
        :param driver: Compose driver used for bring-up, teardown and listing.
        :param prober: Readiness prober used at startup and for status.
        :param streamer: Log streamer used for log queries.
        :param topology: Services to manage; defaults to node, Prometheus and Grafana.
        """
        self.config = config
        self.driver = driver
        self.prober = prober
        self.streamer = streamer
        self.topology = list(topology) if topology is not None else default_topology(config)

        self._state = StackState(health={d.name: HealthStatus.UNKNOWN for d in self.topology})
        self._state_lock = threading.Lock()
        self._transition_lock = threading.Lock()
        self._transitions = 0
        self._derived = False
        self._monitor: Optional[threading.Thread] = None
        self._monitor_cancel: Optional[threading.Event] = None

    @classmethod
    def from_config(cls, config: StackConfig, engine: Optional[ContainerEngine] = None) -> "LifecycleOrchestrator":
        """Builds an orchestrator wired to ``docker compose`` unless another engine is given."""
        engine = engine or ComposeCliEngine(config)
        return cls(
            config,
            driver=ComposeDriver(engine),
            prober=ReadinessProber(),
            streamer=LogStreamer(engine, poll_interval=config.poll_interval),
        )

    # State access

    def snapshot(self) -> StackSnapshot:
        """Consistent copy of the current state."""
        with self._state_lock:
            return self._state.snapshot()

    @property
    def phase(self) -> StackPhase:
        return self.snapshot().phase

    def _current(self) -> Tuple[StackSnapshot, int]:
        """Snapshot plus the number of phase changes so far, read together."""
        with self._state_lock:
            return self._state.snapshot(), self._transitions

    def _update(self, phase: Optional[StackPhase] = None, **fields) -> None:
        with self._state_lock:
            self._apply(phase, **fields)

    def _apply(self, phase: Optional[StackPhase] = None, **fields) -> None:
        # caller holds the state lock
        for name, value in fields.items():
            setattr(self._state, name, value)
        if phase is not None:
            self._state.transition(phase)
            self._transitions += 1
            logger.debug("Stack phase -> %s", phase.value)

    def _mark(self, service: str, health: HealthStatus) -> None:
        with self._state_lock:
            self._state.health[service] = health

    def _reset_health(self) -> Dict[str, HealthStatus]:
        return {d.name: HealthStatus.UNKNOWN for d in self.topology}

    # Transitions

    def start(self, block_tip: Optional[str] = None) -> StackSnapshot:
        """
        Brings the stack up and waits for every service to become ready.

        No-op when running. A call made while another start is in flight waits
        for it and returns its outcome without touching the containers again,
        unless another transition (a stop) settled in between; then it starts
        the stack itself. Driver failures and readiness timeouts leave the
        stack ``failed`` with ``last_error`` set; started containers are left
        running.

        :param block_tip: Sync tip overriding the configured one.
        :return: The state after the call.
        :raises ConfigError: If ``block_tip`` is invalid; nothing is changed.
        """
        tip = validate_block_tip(block_tip) if block_tip is not None else self.config.block_tip

        current, seen = self._current()
        if current.phase == StackPhase.RUNNING:
            logger.info("Stack already running, start is a no-op.")
            return current
        joined = current.phase == StackPhase.STARTING

        with self._transition_lock:
            self._derived = True
            current, now = self._current()
            if joined and now == seen + 1:
                # the joined start settled and nothing ran after it
                logger.info("Joined start in progress, stack is %s.", current.phase.value)
                return current
            if current.phase in ACTIVE_PHASES:
                logger.info("Stack already %s, start is a no-op.", current.phase.value)
                return current

            logger.info("Starting node stack%s", f" (block tip {tip})" if tip else "")
            self._update(StackPhase.STARTING, last_error=None, health=self._reset_health())
            env = {"RETH_TIP": tip} if tip else None
            try:
                self.driver.bring_up(self.topology, env=env)
                self._await_readiness()
            except DriverError as e:
                self._fail(f"bring-up failed: {e}")
            except ProbeTimeout as e:
                self._fail(f"{e.service}: {e}")
            except Exception as e:
                self._fail(f"unexpected error: {e}")
                raise
            else:
                self._update(StackPhase.RUNNING)
                self._start_monitor()
                logger.info("Node stack is running.")
            return self.snapshot()

    def _fail(self, message: str) -> None:
        logger.error("Node stack failed to start: %s", message)
        self._update(StackPhase.FAILED, last_error=message)

    def _await_one(self, descriptor: ServiceDescriptor) -> None:
        try:
            self.prober.wait_until_ready(descriptor, self.config.startup_timeout, self.config.poll_interval)
        except ProbeTimeout:
            self._mark(descriptor.name, HealthStatus.UNHEALTHY)
            raise
        if descriptor.health_check is not None:
            self._mark(descriptor.name, HealthStatus.HEALTHY)

    def _await_readiness(self) -> None:
        # Ranks are awaited in order; services sharing a rank are probed together.
        for group in order_by_rank(self.topology):
            if len(group) == 1:
                self._await_one(group[0])
                continue
            with ThreadPoolExecutor(max_workers=len(group), thread_name_prefix="probe") as pool:
                futures = [pool.submit(self._await_one, d) for d in group]
            for future in futures:
                future.result()

    def stop(self) -> StackSnapshot:
        """
        Tears the stack down. Always ends ``stopped``; teardown errors are
        logged and recorded in ``last_error``. No-op when already stopped.

        :return: The state after the call.
        """
        if self.snapshot().phase == StackPhase.STOPPED:
            logger.info("Stack already stopped, stop is a no-op.")
            return self.snapshot()

        with self._transition_lock:
            self._derived = True
            self._cancel_monitor()
            if self.snapshot().phase == StackPhase.STOPPED:
                return self.snapshot()

            logger.info("Stopping node stack")
            self._update(StackPhase.STOPPING)
            error = None
            try:
                self.driver.tear_down(self.topology)
            except DriverError as e:
                error = f"teardown failed: {e}"
                logger.error("Teardown reported an error, marking stack stopped anyway: %s", e)
            except Exception as e:
                self._update(StackPhase.STOPPED, last_error=f"teardown failed: {e}", health=self._reset_health())
                raise
            self._update(StackPhase.STOPPED, last_error=error, health=self._reset_health())
            logger.info("Node stack stopped.")
            return self.snapshot()

    # Monitoring

    def _start_monitor(self) -> None:
        # caller holds the transition lock
        cancelled = threading.Event()
        monitor = threading.Thread(target=self._watch, args=(cancelled,), name="stack-monitor", daemon=True)
        with self._state_lock:
            if self._monitor_cancel is not None:
                self._monitor_cancel.set()
            self._monitor, self._monitor_cancel = monitor, cancelled
        monitor.start()

    def _cancel_monitor(self) -> Optional[threading.Thread]:
        with self._state_lock:
            if self._monitor_cancel is not None:
                self._monitor_cancel.set()
            return self._monitor

    def _watch(self, cancelled: threading.Event) -> None:
        logger.debug("Health monitor started, checking every %ss", self.config.monitor_interval)
        while not cancelled.wait(self.config.monitor_interval):
            with self._state_lock:
                if cancelled.is_set() or self._state.phase != StackPhase.RUNNING:
                    break
                seen = self._transitions
            self._record(self._probe_all(), seen)
        logger.debug("Health monitor exited")

    def _record(self, health: Dict[str, HealthStatus], seen: int) -> None:
        """
        Stores health probed since the ``seen``-th phase change.

        Results are dropped if the phase changed meanwhile or a transition is in
        flight. A running stack with an unhealthy checked service becomes
        ``failed``, and its monitor is cancelled.
        """
        lost = [d.name for d in self.topology
                if d.health_check is not None and health.get(d.name) == HealthStatus.UNHEALTHY]
        with self._state_lock:
            if self._transitions != seen or self._state.phase not in SETTLED_PHASES:
                return
            self._state.health.update(health)
            if self._state.phase != StackPhase.RUNNING or not lost:
                return
            message = f"{', '.join(lost)}: became unhealthy after being healthy"
            self._apply(StackPhase.FAILED, last_error=message)
            if self._monitor_cancel is not None:
                self._monitor_cancel.set()
        logger.error("Node stack failed: %s", message)

    def close(self) -> None:
        """Stops the health monitor and waits for it to exit. Containers are left as they are."""
        monitor = self._cancel_monitor()
        if monitor is not None and monitor is not threading.current_thread():
            monitor.join()

    # Queries

    def _adopt(self, running: Set[str], health: Dict[str, HealthStatus]) -> None:
        """
        Adopts a stack left running by a previous process, once, before any transition.
        Gives up without waiting if a transition holds the lock.
        """
        if not self._transition_lock.acquire(blocking=False):
            return
        try:
            if self._derived:
                return
            self._derived = True
            if not running:
                return
            checked = [d for d in self.topology if d.health_check is not None]
            if all(health[d.name] == HealthStatus.HEALTHY for d in checked) and \
                    {d.service for d in self.topology} <= running:
                logger.info("Found a healthy stack already running, adopting it.")
                self._update(StackPhase.RUNNING, health=health)
                self._start_monitor()
            else:
                logger.info("Found running services %s that are not all healthy.", ", ".join(sorted(running)))
                self._update(health=health)
        finally:
            self._transition_lock.release()

    def _probe_all(self) -> Dict[str, HealthStatus]:
        if not self.topology:
            return {}
        with ThreadPoolExecutor(max_workers=len(self.topology), thread_name_prefix="status") as pool:
            results = list(pool.map(self.prober.check_once, self.topology))
        return {d.name: status for d, status in zip(self.topology, results)}

    def status(self) -> StackStatus:
        """
        Current phase plus a fresh health check of every service.

        A running stack whose checked service no longer answers is moved to
        ``failed`` here, as the monitor would. The first query before any
        transition may adopt a healthy stack that is already up.
        """
        seen = self._current()[1]
        try:
            running = self.driver.list_running(self.topology)
            listed = True
        except DriverError as e:
            logger.warning("Could not list running services: %s", e)
            running, listed = set(), False
        health = self._probe_all()

        if listed and not self._derived:
            self._adopt(running, health)
        self._record(health, seen)
        return StackStatus(snapshot=self.snapshot(), services=health, running=frozenset(running))

    def _service(self, service: Optional[str]) -> str:
        if service is None:
            return self.config.node_service
        known = {d.service for d in self.topology} | {d.name for d in self.topology}
        if service not in known:
            raise ConfigError(f"Unknown service '{service}', expected one of: {', '.join(sorted(known))}")
        for d in self.topology:
            if service == d.name:
                return d.service
        return service

    def logs(self, service: Optional[str] = None, lines: Optional[int] = None) -> List[LogLine]:
        """
        Most recent log lines of a service (the node by default). Allowed in any phase.

        :raises StreamError: If the log source is unavailable.
        """
        return self.streamer.tail(self._service(service), lines)

    def follow(self, service: Optional[str] = None) -> FollowSession:
        """A cancellable follow session on a service's output (the node by default)."""
        return self.streamer.follow(self._service(service))

    def running_services(self) -> Set[str]:
        """
        Topology services the engine reports as running.

        :raises DriverError: If the engine cannot be queried.
        """
        return self.driver.list_running(self.topology)

    def urls(self) -> Dict[str, str]:
        """Configured endpoints of the stack. Performs no I/O."""
        return self.config.endpoints()

    def descriptor(self, name: str) -> ServiceDescriptor:
        for d in self.topology:
            if d.name == name or d.service == name:
                return d
        raise ConfigError(f"Unknown service '{name}'")
