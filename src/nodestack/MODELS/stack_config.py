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
Immutable per-run configuration for the node stack.
"""
import os
import re
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from ..errors import ConfigError

BLOCK_NUMBER_RE = re.compile(r"^[0-9]{1,20}$")
BLOCK_HASH_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")


def validate_block_tip(tip: Optional[str]) -> Optional[str]:
    """
    Checks a sync tip supplied by a caller.

    A tip is either a decimal block number or a 0x-prefixed block hash.
    Surrounding whitespace is stripped; None means "use the default".

    :param tip: The raw tip value.
    :return: The normalized tip, or None.
    :raises ConfigError: If the value is not a block identifier.
    """
    if tip is None:
        return None
    value = str(tip).strip()
    if BLOCK_NUMBER_RE.match(value) or BLOCK_HASH_RE.match(value):
        return value
    raise ConfigError(
        f"Invalid block tip {tip!r}: expected a block number or a 0x-prefixed 32-byte hash."
    )


class StackConfig(BaseModel):
    """
    Configuration for one managed stack.
    Created once, before the orchestrator, and never mutated.
    """

    model_config = ConfigDict(frozen=True)

    working_dir: str = "local_reth"
    compose_file: Optional[str] = None
    block_tip: Optional[str] = None

    host: str = "localhost"
    rpc_port: int = Field(default=8545, ge=1, le=65535)
    metrics_port: int = Field(default=9000, ge=1, le=65535)
    prometheus_port: int = Field(default=9090, ge=1, le=65535)
    grafana_port: int = Field(default=3000, ge=1, le=65535)

    node_service: str = "reth"
    startup_timeout: float = Field(default=120.0, gt=0)
    poll_interval: float = Field(default=1.0, gt=0)
    monitor_interval: float = Field(default=30.0, gt=0)
    remove_volumes: bool = True

    @field_validator("block_tip", mode="before")
    @classmethod
    def _check_tip(cls, v):
        try:
            return validate_block_tip(v)
        except ConfigError as e:
            raise ValueError(str(e)) from e

    @field_validator("working_dir", "host", "node_service")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("must not be empty")
        return v

    @model_validator(mode="after")
    def _check_timing(self):
        if self.poll_interval > self.startup_timeout:
            raise ValueError("poll_interval must not exceed startup_timeout")
        return self

    @classmethod
    def build(cls, **values: Any) -> "StackConfig":
        """
        Validates values into a config, dropping entries that are None.

        :raises ConfigError: If any value is invalid.
        """
        values = {k: v for k, v in values.items() if v is not None}
        try:
            return cls(**values)
        except ValidationError as e:
            raise ConfigError(_describe(e)) from e

    def with_overrides(self, **values: Any) -> "StackConfig":
        """Returns a validated copy with the given fields replaced."""
        merged = self.model_dump()
        merged.update({k: v for k, v in values.items() if v is not None})
        return StackConfig.build(**merged)

    @property
    def compose_path(self) -> str:
        """Path of the compose definition, resolved against the working directory."""
        if self.compose_file:
            return os.path.join(self.working_dir, self.compose_file)
        return os.path.join(self.working_dir, "docker-compose.yml")

    def endpoints(self) -> Dict[str, str]:
        """Public endpoints of the stack, keyed by service role."""
        return {
            "rpc": f"http://{self.host}:{self.rpc_port}",
            "metrics": f"http://{self.host}:{self.metrics_port}",
            "prometheus": f"http://{self.host}:{self.prometheus_port}",
            "grafana": f"http://{self.host}:{self.grafana_port}",
        }


def _describe(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        field = ".".join(str(p) for p in item.get("loc", ())) or "config"
        parts.append(f"{field}: {item.get('msg', 'invalid value')}")
    return "Invalid configuration: " + "; ".join(parts)
