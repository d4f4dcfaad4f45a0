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
The interactive surface: every orchestrator operation plus dashboard
readiness, metrics passthrough and endpoint listing.
"""
from typing import Dict, List, Optional

from ..errors import DriverError, MetricsUnavailable
from ..MANAGERS.lifecycle_orchestrator import LifecycleOrchestrator
from ..MANAGERS.log_streamer import FollowSession
from ..MANAGERS.metrics_client import MetricsClient
from ..MODELS.job_result import JobResult
from ..MODELS.log_line import LogLine
from ..MODELS.stack_state import HealthStatus, StackStatus
from .messages import start_result, stop_result


class InteractiveSurface:
    """
    Local command surface over a shared orchestrator.
    """
    def __init__(self, orchestrator: LifecycleOrchestrator, metrics: Optional[MetricsClient] = None):
        """
        :param orchestrator: The orchestrator managing the stack.
        :param metrics: Client for the node's metrics endpoint; built from the config if omitted.
        """
        self.orchestrator = orchestrator
        self.metrics_client = metrics or MetricsClient(orchestrator.urls()["metrics"])

    def start(self, block_tip: Optional[str] = None) -> JobResult:
        """
        Starts the stack.

        :raises ConfigError: If the block tip is invalid.
        """
        return start_result(self.orchestrator.start(block_tip), self.orchestrator.urls())

    def stop(self) -> JobResult:
        return stop_result(self.orchestrator.stop())

    def status(self) -> StackStatus:
        return self.orchestrator.status()

    def logs(self, service: Optional[str] = None, lines: Optional[int] = None) -> List[LogLine]:
        return self.orchestrator.logs(service, lines)

    def follow(self, service: Optional[str] = None) -> FollowSession:
        return self.orchestrator.follow(service)

    def grafana(self) -> JobResult:
        """Checks that the dashboard service answers its health check."""
        url = self.orchestrator.urls()["grafana"]
        health = self.orchestrator.prober.check_once(self.orchestrator.descriptor("grafana"))
        if health == HealthStatus.HEALTHY:
            return JobResult.ok(
                f"Grafana is running and available at {url}\n"
                "Login with username: admin, password: admin\n"
                "The node dashboard should be available after login."
            )
        return JobResult.failure(
            f"Grafana is not ready ({health.value}). Please start the node stack first."
        )

    def metrics(self) -> Dict[str, str]:
        """
        Current samples from the node's metrics endpoint.

        :raises MetricsUnavailable: If nothing is running or the endpoint cannot be read.
        """
        try:
            running = self.orchestrator.running_services()
        except DriverError as e:
            raise MetricsUnavailable(f"Cannot determine whether the node is running: {e}") from e
        if not running:
            raise MetricsUnavailable("Node stack is not running. Please start it first.")
        return self.metrics_client.fetch()

    def urls(self) -> Dict[str, str]:
        return self.orchestrator.urls()
