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
Runtime state of a managed stack.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, FrozenSet, Optional


class StackPhase(str, Enum):
    """Lifecycle phase of the whole stack."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    FAILED = "failed"


class HealthStatus(str, Enum):
    """Health of a single service."""

    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class StackState:
    """
    Mutable record owned by the orchestrator.
    Only the orchestrator writes it, under its state lock.
    """

    phase: StackPhase = StackPhase.STOPPED
    health: Dict[str, HealthStatus] = field(default_factory=dict)
    last_error: Optional[str] = None
    last_transition: Optional[str] = None

    def transition(self, phase: StackPhase) -> None:
        self.phase = phase
        self.last_transition = utc_now()

    def snapshot(self) -> "StackSnapshot":
        return StackSnapshot(
            phase=self.phase,
            health=dict(self.health),
            last_error=self.last_error,
            last_transition=self.last_transition,
        )


@dataclass(frozen=True)
class StackSnapshot:
    """Point-in-time copy of StackState handed to readers."""

    phase: StackPhase
    health: Dict[str, HealthStatus]
    last_error: Optional[str] = None
    last_transition: Optional[str] = None


@dataclass(frozen=True)
class StackStatus:
    """
    Result of a status query: the stack phase plus live service health
    and the compose services the engine reports as running.
    """

    snapshot: StackSnapshot
    services: Dict[str, HealthStatus]
    running: FrozenSet[str] = frozenset()

    @property
    def phase(self) -> StackPhase:
        return self.snapshot.phase

    @property
    def healthy(self) -> bool:
        """True when every service answered its last check."""
        return bool(self.services) and all(
            s == HealthStatus.HEALTHY for s in self.services.values()
        )
