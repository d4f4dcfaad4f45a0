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
Static metadata for the services that make up the stack.
"""
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict

from .stack_config import StackConfig


class HealthCheckKind(str, Enum):
    """
    How a service's readiness is probed.
    """
    TCP = "tcp"
    HTTP = "http"
    RPC = "rpc"


class HealthCheck(BaseModel):
    """
    A readiness check against a service's exposed surface.

    ``target`` is ``host:port`` for TCP checks and a URL for HTTP and RPC checks.
    """
    model_config = ConfigDict(frozen=True)

    kind: HealthCheckKind
    target: str
    expected_status: int = 200
    rpc_method: str = "web3_clientVersion"
    timeout: float = 2.0


class ServiceDescriptor(BaseModel):
    """
    One managed service: its name, compose service id, readiness check and startup rank.
    """
    model_config = ConfigDict(frozen=True)

    name: str
    service: str
    health_check: Optional[HealthCheck] = None
    rank: int = 0


def default_topology(config: StackConfig) -> List[ServiceDescriptor]:
    """
    The fixed node + metrics collector + dashboard topology.

    The node must answer JSON-RPC before Prometheus is awaited, and Prometheus
    before Grafana, since each scrapes or queries the previous one.

    :param config: The stack configuration supplying host and ports.
    :return: Descriptors ordered by startup rank.
    """
    host = config.host
    return [
        ServiceDescriptor(
            name=config.node_service,
            service=config.node_service,
            health_check=HealthCheck(
                kind=HealthCheckKind.RPC,
                target=f"http://{host}:{config.rpc_port}",
            ),
            rank=0,
        ),
        ServiceDescriptor(
            name="prometheus",
            service="prometheus",
            health_check=HealthCheck(
                kind=HealthCheckKind.HTTP,
                target=f"http://{host}:{config.prometheus_port}/-/ready",
            ),
            rank=1,
        ),
        ServiceDescriptor(
            name="grafana",
            service="grafana",
            health_check=HealthCheck(
                kind=HealthCheckKind.HTTP,
                target=f"http://{host}:{config.grafana_port}/api/health",
            ),
            rank=2,
        ),
    ]


def order_by_rank(topology: List[ServiceDescriptor]) -> List[List[ServiceDescriptor]]:
    """
    Groups descriptors by startup rank, lowest rank first.
    Descriptors sharing a rank keep their declared order.
    """
    groups = {}
    for descriptor in topology:
        groups.setdefault(descriptor.rank, []).append(descriptor)
    return [groups[rank] for rank in sorted(groups)]
