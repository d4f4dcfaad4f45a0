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
Translates lifecycle intents into container-engine calls for the stack topology.
"""
import logging
from typing import Dict, List, Optional, Set

from .container_engine import ContainerEngine
from ..MODELS.service_descriptor import ServiceDescriptor

logger = logging.getLogger(__name__)


class ComposeDriver:
    """
    Thin adapter between the orchestrator and a ContainerEngine.

    Keeps no state between calls; what is running is always re-read from the engine.
    """
    def __init__(self, engine: ContainerEngine):
        """
        Initializes the driver.

        :param engine: Engine executing the compose definition.
        """
        self.engine = engine

    @staticmethod
    def _services(topology: List[ServiceDescriptor]) -> List[str]:
        ordered = sorted(topology, key=lambda d: d.rank)
        return list(dict.fromkeys(d.service for d in ordered))

    def bring_up(self, topology: List[ServiceDescriptor], env: Optional[Dict[str, str]] = None) -> None:
        """
        Starts every service of the topology. Safe to call while they are up.

        :param topology: Services to start.
        :param env: Extra environment for the compose run, e.g. the sync tip.
        :raises DriverError: If the engine rejects the request.
        """
        services = self._services(topology)
        logger.info("Bringing up services: %s", ", ".join(services))
        self.engine.up(services, env=env)

    def tear_down(self, topology: List[ServiceDescriptor]) -> None:
        """
        Stops and removes every service. Services that are already gone count as stopped.

        :raises DriverError: If the engine fails to tear the project down.
        """
        services = self._services(topology)
        logger.info("Tearing down services: %s", ", ".join(reversed(services)))
        self.engine.down(services)

    def list_running(self, topology: List[ServiceDescriptor]) -> Set[str]:
        """
        Topology services the engine reports as running.

        :raises DriverError: If the engine cannot be queried.
        """
        wanted = set(self._services(topology))
        return self.engine.running_services() & wanted
