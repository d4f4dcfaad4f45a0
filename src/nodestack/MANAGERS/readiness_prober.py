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
Readiness probing for services: TCP connect, HTTP status and JSON-RPC checks,
polled until success or a deadline.
"""
import http.client
import json
import logging
import time
from typing import Callable, Dict, Optional
from urllib.error import HTTPError, URLError
from urllib.parse import urlparse
from urllib.request import Request, urlopen

from tenacity import RetryError, Retrying, retry_if_result

from ..errors import ProbeTimeout
from ..MODELS.service_descriptor import HealthCheck, HealthCheckKind, ServiceDescriptor
from ..MODELS.stack_state import HealthStatus
from ..UTILS.port_finder import can_connect, parse_address

logger = logging.getLogger(__name__)

# A check returns True when the service is ready, False when it is not, and
# raises ValueError when the check itself cannot be evaluated.
Check = Callable[[HealthCheck, float], bool]


def _require_http_url(target: str) -> None:
    parsed = urlparse(target)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValueError(f"Malformed URL {target!r}")
    # raises ValueError for a non-numeric or out-of-range port
    parsed.port


def check_tcp(hc: HealthCheck, timeout: float) -> bool:
    host, port = parse_address(hc.target)
    return can_connect(host, port, timeout=timeout)


def check_http(hc: HealthCheck, timeout: float) -> bool:
    _require_http_url(hc.target)
    try:
        with urlopen(Request(hc.target), timeout=timeout) as response:
            status = response.status
    except HTTPError as e:
        status = e.code
    except (URLError, OSError, http.client.HTTPException):
        return False
    return status == hc.expected_status


def check_rpc(hc: HealthCheck, timeout: float) -> bool:
    _require_http_url(hc.target)
    body = json.dumps({"jsonrpc": "2.0", "method": hc.rpc_method, "params": [], "id": 1})
    request = Request(
        hc.target,
        data=body.encode("utf-8"),
        headers={"Content-Type": "application/json"},
        method="POST",
    )
    try:
        with urlopen(request, timeout=timeout) as response:
            payload = json.loads(response.read().decode("utf-8"))
    except json.JSONDecodeError:
        return False
    except (URLError, OSError, http.client.HTTPException, UnicodeDecodeError):
        return False
    return isinstance(payload, dict) and "result" in payload and payload.get("error") is None


DEFAULT_CHECKS: Dict[HealthCheckKind, Check] = {
    HealthCheckKind.TCP: check_tcp,
    HealthCheckKind.HTTP: check_http,
    HealthCheckKind.RPC: check_rpc,
}


class ReadinessProber:
    """
    Polls a service's health surface.

    Each attempt stands alone: connection failures and malformed targets only
    fail that attempt. Only running out of time is an error.
    """

    def __init__(self, checks: Optional[Dict[HealthCheckKind, Check]] = None,
                 sleep: Callable[[float], None] = time.sleep):
        """
        Initializes the prober.

        :param checks: Check function per health-check kind, defaults to the network checks.
        :param sleep: Sleep function used between attempts.
        """
        self.checks = dict(DEFAULT_CHECKS)
        if checks:
            self.checks.update(checks)
        self._sleep = sleep

    def _probe(self, hc: HealthCheck, timeout: float) -> bool:
        return bool(self.checks[hc.kind](hc, timeout))

    def wait_until_ready(self, descriptor: ServiceDescriptor, timeout: float, poll_interval: float) -> None:
        """
        Blocks until the service answers its health check.

        Gives up no later than ``timeout`` plus one ``poll_interval``: the pause
        between attempts and each attempt's own timeout are both cut down to
        whatever is left before the deadline.

        :param descriptor: The service to probe.
        :param timeout: Seconds to keep trying.
        :param poll_interval: Seconds between attempts.
        :raises ProbeTimeout: If the service never became ready.
        """
        hc = descriptor.health_check
        if hc is None:
            return

        deadline = time.monotonic() + timeout
        last_problem = []

        def remaining() -> float:
            return max(0.0, deadline - time.monotonic())

        def attempt() -> bool:
            budget = min(hc.timeout, poll_interval, remaining())
            if budget <= 0:
                return False
            try:
                return self._probe(hc, budget)
            except ValueError as e:
                last_problem[:] = [str(e)]
                return False

        logger.info("Waiting for %s to become ready (%s %s)...", descriptor.name, hc.kind.value, hc.target)
        retryer = Retrying(
            stop=lambda retry_state: remaining() <= 0,
            wait=lambda retry_state: min(poll_interval, remaining()),
            retry=retry_if_result(lambda ready: not ready),
            sleep=self._sleep,
            reraise=False,
        )
        try:
            retryer(attempt)
        except RetryError:
            detail = last_problem[0] if last_problem else f"no healthy response from {hc.target}"
            logger.warning("Service %s failed to become ready within %ss.", descriptor.name, timeout)
            raise ProbeTimeout(descriptor.name, timeout, detail) from None
        logger.info("Service %s is ready.", descriptor.name)

    def check_once(self, descriptor: ServiceDescriptor) -> HealthStatus:
        """
        Runs a single probe for a status query.

        :return: HEALTHY or UNHEALTHY, or UNKNOWN when there is no check or it
                 cannot be evaluated.
        """
        hc = descriptor.health_check
        if hc is None:
            return HealthStatus.UNKNOWN
        try:
            ready = self._probe(hc, hc.timeout)
        except ValueError as e:
            logger.debug("Health check for %s cannot be evaluated: %s", descriptor.name, e)
            return HealthStatus.UNKNOWN
        return HealthStatus.HEALTHY if ready else HealthStatus.UNHEALTHY
