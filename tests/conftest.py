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
Shared fixtures: an in-memory container engine, scripted health checks and
a small local HTTP server.
"""
import threading
import time
from collections import Counter, deque
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest

from nodestack.DRIVERS.compose_driver import ComposeDriver
from nodestack.DRIVERS.container_engine import ContainerEngine, LogHandle
from nodestack.errors import DriverError, StreamError
from nodestack.MANAGERS.lifecycle_orchestrator import LifecycleOrchestrator
from nodestack.MANAGERS.log_streamer import LogStreamer
from nodestack.MANAGERS.readiness_prober import ReadinessProber
from nodestack.MODELS.service_descriptor import HealthCheckKind, default_topology
from nodestack.MODELS.stack_config import StackConfig


class FakeLogHandle(LogHandle):
    def __init__(self, engine, lines, ends):
        self.engine = engine
        self._lines = deque(lines)
        self._ends = ends
        self._ended = False
        self._wake = threading.Event()
        self.closed = False

    def read_line(self, timeout):
        if self._lines:
            return self._lines.popleft()
        if self._ends:
            self._ended = True
            return None
        self._wake.wait(timeout)
        return None

    @property
    def exhausted(self):
        return self._ended

    def close(self):
        if not self.closed:
            self.closed = True
            self._wake.set()
            self.engine._stream_closed()


class FakeEngine(ContainerEngine):
    """
    Records every call and keeps the set of running services in memory.
    """

    def __init__(self, services=("reth", "prometheus", "grafana")):
        self.services = list(services)
        self.running = set()
        self.calls = []
        self.envs = []
        self.fail_up = None
        self.fail_down = None
        self.unreachable = False
        self.logs_unavailable = False
        self.on_down = None
        self.log_lines = {}
        self.stream_lines = {}
        self.stream_ends = False
        self.open_streams = 0
        self.max_open_streams = 0
        self.streams_opened = 0
        self._active = 0
        self.max_concurrent_calls = 0
        self._lock = threading.Lock()

    def _enter(self, name):
        with self._lock:
            self.calls.append(name)
            self._active += 1
            self.max_concurrent_calls = max(self.max_concurrent_calls, self._active)

    def _leave(self):
        with self._lock:
            self._active -= 1

    def up(self, services, env=None):
        self._enter("up")
        try:
            self.envs.append(env)
            time.sleep(0.01)
            if self.fail_up:
                raise DriverError(self.fail_up)
            self.running |= set(services)
        finally:
            self._leave()

    def down(self, services):
        self._enter("down")
        try:
            if self.on_down:
                self.on_down()
            time.sleep(0.01)
            if self.fail_down:
                # the failing service stays behind, the rest is removed
                self.running = {s for s in self.running if s == self.fail_down}
                raise DriverError(f"failed to remove {self.fail_down}")
            self.running.clear()
        finally:
            self._leave()

    def running_services(self):
        if self.unreachable:
            raise DriverError("Cannot connect to the container engine")
        return set(self.running)

    def read_logs(self, service, tail=None):
        if self.logs_unavailable:
            raise StreamError(f"Logs for '{service}' unavailable")
        lines = list(self.log_lines.get(service, []))
        return lines[-tail:] if tail else lines

    def open_log_stream(self, service):
        if self.logs_unavailable:
            raise StreamError(f"Logs for '{service}' unavailable")
        with self._lock:
            self.open_streams += 1
            self.streams_opened += 1
            self.max_open_streams = max(self.max_open_streams, self.open_streams)
        return FakeLogHandle(self, self.stream_lines.get(service, []), self.stream_ends)

    def _stream_closed(self):
        with self._lock:
            self.open_streams -= 1

    def count(self, name):
        return self.calls.count(name)


class HealthBoard:
    """
    Scripted readiness per service; plugs into ReadinessProber as its checks.
    """

    def __init__(self, topology):
        self._names = {d.health_check.target: d.name for d in topology if d.health_check}
        self.behaviour = {name: (lambda: True) for name in self._names.values()}
        self.calls = Counter()
        self.first_call = {}

    def healthy(self, name):
        self.behaviour[name] = lambda: True

    def down(self, name):
        self.behaviour[name] = lambda: False

    def after(self, name, seconds):
        ready_at = time.monotonic() + seconds
        self.behaviour[name] = lambda: time.monotonic() >= ready_at

    def malformed(self, name):
        def check():
            raise ValueError("Malformed address")
        self.behaviour[name] = check

    def check(self, hc, timeout):
        name = self._names[hc.target]
        self.calls[name] += 1
        self.first_call.setdefault(name, time.monotonic())
        return self.behaviour[name]()

    def checks(self):
        return {kind: self.check for kind in HealthCheckKind}


@pytest.fixture
def config():
    return StackConfig(working_dir="local_reth", startup_timeout=5.0, poll_interval=0.05)


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def board(config):
    return HealthBoard(default_topology(config))


@pytest.fixture
def board_factory():
    return HealthBoard


@pytest.fixture
def make_orchestrator(engine, board):
    made = []

    def make(config):
        orchestrator = LifecycleOrchestrator(
            config,
            driver=ComposeDriver(engine),
            prober=ReadinessProber(checks=board.checks()),
            streamer=LogStreamer(engine, poll_interval=0.05),
        )
        made.append(orchestrator)
        return orchestrator
    yield make
    for orchestrator in made:
        orchestrator.close()


@pytest.fixture
def orchestrator(make_orchestrator, config):
    return make_orchestrator(config)


class _Handler(BaseHTTPRequestHandler):
    routes = {}

    def _reply(self):
        status, body, content_type = self.routes.get(self.path, (404, b"not found", "text/plain"))
        if callable(body):
            length = int(self.headers.get("Content-Length") or 0)
            body = body(self.rfile.read(length))
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    do_GET = _reply
    do_POST = _reply

    def log_message(self, format, *args):
        pass


@pytest.fixture
def http_server():
    """
    Serves ``server.routes[path] = (status, body, content_type)`` on a free port.
    ``body`` may be a callable receiving the request body.
    """
    handler = type("RouteHandler", (_Handler,), {"routes": {}})
    server = ThreadingHTTPServer(("127.0.0.1", 0), handler)
    server.routes = handler.routes
    server.url = f"http://127.0.0.1:{server.server_address[1]}"
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield server
    server.shutdown()
    server.server_close()
