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
Access to the container engine that runs the stack's compose definition.

``ContainerEngine`` is the capability the rest of the package depends on;
``ComposeCliEngine`` implements it by running ``docker compose`` in the
stack's working directory.
"""
import logging
import os
import queue
import subprocess
import threading
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Sequence, Set

from ..errors import DriverError, StreamError
from ..MODELS.stack_config import StackConfig
from ..PARSERS.compose_parser import ComposeParser

logger = logging.getLogger(__name__)


class LogHandle(ABC):
    """
    An open stream of lines from one service.
    """

    @abstractmethod
    def read_line(self, timeout: float) -> Optional[str]:
        """
        Waits up to ``timeout`` seconds for the next line.

        :return: The line without its trailing newline, or None if nothing arrived.
        """

    @property
    @abstractmethod
    def exhausted(self) -> bool:
        """True once the source has ended and every line has been read."""

    @abstractmethod
    def close(self) -> None:
        """Releases the stream. Safe to call more than once."""


class ContainerEngine(ABC):
    """
    Capability interface over the container-engine daemon for one compose project.
    """

    @abstractmethod
    def up(self, services: Sequence[str], env: Optional[Dict[str, str]] = None) -> None:
        """Creates and starts the services; already running ones are left alone."""

    @abstractmethod
    def down(self, services: Sequence[str]) -> None:
        """Stops and removes the project; absent services are not an error."""

    @abstractmethod
    def running_services(self) -> Set[str]:
        """Names of compose services whose containers are running."""

    @abstractmethod
    def read_logs(self, service: str, tail: Optional[int] = None) -> List[str]:
        """Returns buffered output lines of a service, optionally only the last ``tail``."""

    @abstractmethod
    def open_log_stream(self, service: str) -> LogHandle:
        """Starts following new output of a service."""


class ProcessLogHandle(LogHandle):
    """
    Follows the stdout of a ``logs --follow`` process.

    A reader thread moves lines into a queue so that ``read_line`` can honour
    its timeout; closing terminates the process and joins the reader.
    """
    _EOF = object()

    def __init__(self, process: subprocess.Popen):
        self.process = process
        self._lines: "queue.Queue" = queue.Queue()
        self._eof = False
        self._closed = False
        self._reader = threading.Thread(target=self._pump, daemon=True)
        self._reader.start()

    def _pump(self) -> None:
        try:
            for line in self.process.stdout:
                self._lines.put(line.rstrip("\n"))
        except (OSError, ValueError):
            # stdout closed underneath us by close()
            pass
        finally:
            self._lines.put(self._EOF)

    def read_line(self, timeout: float) -> Optional[str]:
        if self._eof:
            return None
        try:
            item = self._lines.get(timeout=timeout)
        except queue.Empty:
            return None
        if item is self._EOF:
            self._eof = True
            return None
        return item

    @property
    def exhausted(self) -> bool:
        return self._eof

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self.process.poll() is None:
            self.process.terminate()
            try:
                self.process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                logger.warning("Log stream process did not terminate, killing...")
                self.process.kill()
                self.process.wait()
        if self.process.stdout:
            self.process.stdout.close()
        self._reader.join(timeout=1)


class ComposeCliEngine(ContainerEngine):
    """
    Runs ``docker compose`` for the project in the configured working directory.
    """

    def __init__(self, config: StackConfig, command: Sequence[str] = ("docker", "compose"),
                 parser: Optional[ComposeParser] = None):
        """
        :param config: Stack configuration supplying the working directory and compose file.
        :param command: The compose executable and any leading arguments.
        :param parser: Parser used to validate the definition before ``up``.
        """
        self.config = config
        self.command = list(command)
        self.parser = parser or ComposeParser()

    def _base_command(self) -> List[str]:
        cmd = list(self.command)
        if self.config.compose_file:
            cmd += ["-f", self.config.compose_file]
        return cmd

    def _environment(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        env = os.environ.copy()
        if extra:
            env.update(extra)
        return env

    def _spawn_error(self, e: OSError) -> DriverError:
        return DriverError(
            f"Container engine unavailable: cannot run '{self.command[0]}' in "
            f"{self.config.working_dir}: {e}"
        )

    def _run(self, args: Sequence[str], env: Optional[Dict[str, str]] = None) -> str:
        cmd = self._base_command() + list(args)
        logger.debug("Running command: %s (cwd=%s)", " ".join(cmd), self.config.working_dir)
        try:
            result = subprocess.run(
                cmd,
                cwd=self.config.working_dir,
                env=self._environment(env),
                capture_output=True,
                text=True,
                # Avoid shell=True for security reasons (CWE-78)
                shell=False,
            )
        except (FileNotFoundError, NotADirectoryError, PermissionError) as e:
            raise self._spawn_error(e) from e

        if result.returncode != 0:
            message = (result.stderr or result.stdout or "").strip()
            logger.error("Command failed with status %s: %s", result.returncode, message)
            raise DriverError(
                f"'{' '.join(cmd)}' failed with status {result.returncode}: {message}",
                returncode=result.returncode,
            )
        return result.stdout

    def _published_ports(self, services: Sequence[str]) -> Dict[str, int]:
        # host ports the readiness checks connect to
        expected = {
            self.config.node_service: self.config.rpc_port,
            "prometheus": self.config.prometheus_port,
            "grafana": self.config.grafana_port,
        }
        return {s: port for s, port in expected.items() if s in services}

    def up(self, services: Sequence[str], env: Optional[Dict[str, str]] = None) -> None:
        self.parser.validate(self.config.compose_path, list(services), self._published_ports(services))
        self._run(["up", "--detach", *services], env=env)

    def down(self, services: Sequence[str]) -> None:
        args = ["down"]
        if self.config.remove_volumes:
            args.append("--volumes")
        self._run(args)

    def running_services(self) -> Set[str]:
        output = self._run(["ps", "--services", "--filter", "status=running"])
        return {line.strip() for line in output.splitlines() if line.strip()}

    def read_logs(self, service: str, tail: Optional[int] = None) -> List[str]:
        args = ["logs", "--no-color", "--no-log-prefix"]
        if tail is not None:
            args += ["--tail", str(tail)]
        args.append(service)
        try:
            output = self._run(args)
        except DriverError as e:
            raise StreamError(f"Logs for '{service}' unavailable: {e}") from e
        return output.splitlines()

    def open_log_stream(self, service: str) -> LogHandle:
        cmd = self._base_command() + [
            "logs", "--follow", "--no-color", "--no-log-prefix", "--tail", "0", service,
        ]
        logger.debug("Following logs: %s", " ".join(cmd))
        try:
            process = subprocess.Popen(
                cmd,
                cwd=self.config.working_dir,
                env=self._environment(),
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                shell=False,
            )
        except (FileNotFoundError, NotADirectoryError, PermissionError) as e:
            raise StreamError(f"Logs for '{service}' unavailable: {e}") from e
        return ProcessLogHandle(process)
