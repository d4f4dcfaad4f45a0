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
Reads the stack's compose definition so it can be checked before bring-up.
"""
import os
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel

from ..errors import DriverError


class ComposeService(BaseModel):
    """
    The parts of a compose service the stack cares about.
    """
    name: str
    ports: Dict[int, Optional[int]] = {}  # {container: host}
    # a port entry uses ${VAR} interpolation, so host ports are only known to compose
    interpolated_ports: bool = False

    def publishes(self, host_port: int) -> bool:
        """True if the service binds ``host_port`` on the host, or might through interpolation."""
        return self.interpolated_ports or host_port in self.ports.values()


class ComposeDefinition(BaseModel):
    """
    A parsed compose file.
    """
    services: Dict[str, ComposeService]

    def missing(self, services: List[str]) -> List[str]:
        """Services that the definition does not declare."""
        return [s for s in services if s not in self.services]

    def unpublished(self, published: Dict[str, int]) -> List[str]:
        """``service:port`` entries of ``published`` that the definition does not bind on the host."""
        return [
            f"{service}:{port}" for service, port in published.items()
            if service in self.services and not self.services[service].publishes(port)
        ]


class ComposeParser:
    """
    Parser for docker-compose.yml files.
    """
    def parse(self, compose_path: str) -> ComposeDefinition:
        """
        Parses a compose file from a path.

        :param compose_path: Path to the compose file.
        :return: Parsed definition.
        :raises DriverError: If the file is missing or is not a compose mapping.
        """
        if not os.path.isfile(compose_path):
            raise DriverError(f"Compose definition not found: {compose_path}")
        with open(compose_path, 'r') as f:
            content = f.read()
        return self.parse_from_string(content, source=compose_path)

    def parse_from_string(self, content: str, source: str = "<string>") -> ComposeDefinition:
        """
        Parses a compose file from a string.

        :param content: YAML content of the compose file.
        :param source: Name used in error messages.
        :return: Parsed definition.
        """
        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise DriverError(f"Compose definition {source} is not valid YAML: {e}") from e

        if not data:
            data = {}
        if not isinstance(data, dict) or not isinstance(data.get('services', {}), dict):
            raise DriverError(f"Compose definition {source} has no services mapping")

        services = {}
        for name, spec in (data.get('services') or {}).items():
            services[name] = self._parse_service(name, spec or {}, source)
        return ComposeDefinition(services=services)

    def validate(self, compose_path: str, services: List[str],
                 published: Optional[Dict[str, int]] = None) -> ComposeDefinition:
        """
        Parses the definition and checks it declares every given service and
        binds the host ports the stack will probe.

        :param compose_path: Path to the compose file.
        :param services: Services that must be declared.
        :param published: Host port each service must publish, keyed by service.
        :raises DriverError: If the definition is unusable for this topology.
        """
        definition = self.parse(compose_path)
        missing = definition.missing(services)
        if missing:
            raise DriverError(
                f"Compose definition {compose_path} does not declare: {', '.join(missing)}"
            )
        unpublished = definition.unpublished(published or {})
        if unpublished:
            raise DriverError(
                f"Compose definition {compose_path} does not publish: {', '.join(unpublished)}"
            )
        return definition

    def _parse_service(self, name: str, spec: Dict[str, Any], source: str) -> ComposeService:
        if not isinstance(spec, dict):
            raise DriverError(f"Service '{name}' in {source} is not a mapping")

        ports = {}
        interpolated = False
        for p in spec.get('ports', []) or []:
            if '$' in str(p):
                interpolated = True
                continue
            try:
                if isinstance(p, dict):
                    published = p.get('published')
                    ports[int(p['target'])] = int(published) if published is not None else None
                    continue
                parts = str(p).split('/')[0].split(':')
                if len(parts) == 1:
                    ports[int(parts[0])] = None
                else:
                    # host_ip:host:container or host:container
                    ports[int(parts[-1])] = int(parts[-2])
            except (KeyError, ValueError) as e:
                raise DriverError(f"Service '{name}' in {source} has an invalid port entry {p!r}") from e

        return ComposeService(name=name, ports=ports, interpolated_ports=interpolated)
