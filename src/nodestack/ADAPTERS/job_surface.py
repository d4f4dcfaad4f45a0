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
The remote job surface: start and stop only, each a blocking call that
returns a structured result.
"""
import logging
from abc import ABC, abstractmethod
from typing import Callable, Dict, Optional, Union

from ..errors import ConfigError
from ..MANAGERS.lifecycle_orchestrator import LifecycleOrchestrator
from ..MODELS.job_result import JobResult
from .messages import start_result, stop_result

logger = logging.getLogger(__name__)

# Job ids, only for state-changing operations
START_JOB_ID = 1
STOP_JOB_ID = 2

Payload = Optional[Union[str, bytes]]
JobHandler = Callable[[Payload], JobResult]


class JobTransport(ABC):
    """
    The remote job-dispatch transport: delivers job calls to registered
    handlers and carries their results back to the caller.
    """

    @abstractmethod
    def register(self, job_id: int, handler: JobHandler) -> None:
        """Routes calls of ``job_id`` to ``handler``."""


def _decode(payload: Payload) -> Optional[str]:
    if payload is None:
        return None
    if isinstance(payload, bytes):
        try:
            payload = payload.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ConfigError(f"Job payload is not UTF-8: {e}") from e
    payload = payload.strip()
    return payload or None


class RemoteJobSurface:
    """
    Exposes the orchestrator's state-changing operations to remote callers.
    Read-only queries are deliberately not routed here.
    """

    def __init__(self, orchestrator: LifecycleOrchestrator):
        self.orchestrator = orchestrator

    def start(self, block_tip: Optional[str] = None) -> JobResult:
        """
        Starts the stack and waits for the outcome.

        :param block_tip: Optional sync tip override.
        """
        logger.info("Job %s: start", START_JOB_ID)
        try:
            snapshot = self.orchestrator.start(block_tip)
        except ConfigError as e:
            return JobResult.failure(str(e))
        return start_result(snapshot, self.orchestrator.urls())

    def stop(self) -> JobResult:
        """Stops the stack and waits for the outcome."""
        logger.info("Job %s: stop", STOP_JOB_ID)
        return stop_result(self.orchestrator.stop())

    def routes(self) -> Dict[int, JobHandler]:
        return {
            START_JOB_ID: self._start_job,
            STOP_JOB_ID: self._stop_job,
        }

    def _start_job(self, payload: Payload = None) -> JobResult:
        try:
            tip = _decode(payload)
        except ConfigError as e:
            return JobResult.failure(str(e))
        return self.start(tip)

    def _stop_job(self, payload: Payload = None) -> JobResult:
        return self.stop()

    def handle(self, job_id: int, payload: Payload = None) -> JobResult:
        """
        Dispatches one job call.

        :param job_id: ``START_JOB_ID`` or ``STOP_JOB_ID``.
        :param payload: Job argument; for start, an optional sync tip.
        :return: The job's result; unknown ids give a failure result.
        """
        handler = self.routes().get(job_id)
        if handler is None:
            logger.warning("Rejected unknown job id %s", job_id)
            return JobResult.failure(f"Unknown job id {job_id}")
        return handler(payload)

    def attach(self, transport: JobTransport) -> None:
        """Registers the start and stop jobs on a transport."""
        for job_id, handler in self.routes().items():
            transport.register(job_id, handler)
        logger.info("Registered jobs: %s - start, %s - stop", START_JOB_ID, STOP_JOB_ID)
