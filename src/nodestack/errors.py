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
Error types raised by the node stack components.
"""
from typing import Optional


class NodeStackError(Exception):
    """Base class for all node stack errors."""


class ConfigError(NodeStackError):
    """Invalid port, path or sync tip supplied by a caller."""


class DriverError(NodeStackError):
    """The container engine was unreachable or a compose command failed."""

    def __init__(self, message: str, returncode: Optional[int] = None):
        super().__init__(message)
        self.returncode = returncode


class ProbeTimeout(NodeStackError):
    """A service never became ready before its deadline."""

    def __init__(self, service: str, timeout: float, detail: str = ""):
        message = f"service '{service}' not ready after {timeout:g}s (timeout)"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.service = service
        self.timeout = timeout


class StreamError(NodeStackError):
    """The log source for a service is unavailable."""


class MetricsUnavailable(NodeStackError):
    """The metrics exposition endpoint could not be read."""
