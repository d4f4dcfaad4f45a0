"""
Runs ComposeCliEngine against a fake compose executable.
"""
import json
import os
import sys

import pytest
import yaml

from nodestack.DRIVERS.container_engine import ComposeCliEngine
from nodestack.errors import DriverError, StreamError
from nodestack.MANAGERS.log_streamer import LogStreamer
from nodestack.MODELS.stack_config import StackConfig

FAKE_COMPOSE = os.path.join(os.path.dirname(os.path.abspath(__file__)), "fake_compose.py")
SERVICES = ["reth", "prometheus", "grafana"]
PORTS = {"reth": ["8545:8545", "9000:9000"], "prometheus": ["9090:9090"], "grafana": ["3000:3000"]}


def write_compose(directory, services=SERVICES, name="docker-compose.yml", ports=PORTS):
    with open(directory / name, "w") as f:
        yaml.dump({"services": {s: {"image": f"{s}:latest", "ports": ports.get(s, [])} for s in services}}, f)


def recorded_calls(directory):
    path = directory / ".fake-compose-calls"
    if not path.exists():
        return []
    return [json.loads(line) for line in path.read_text().splitlines()]


@pytest.fixture
def make_engine(tmp_path):
    def make(**overrides):
        config = StackConfig(working_dir=str(tmp_path), **overrides)
        return ComposeCliEngine(config, command=(sys.executable, FAKE_COMPOSE))
    return make


def test_up_ps_down(tmp_path, make_engine):
    write_compose(tmp_path)
    engine = make_engine()
    engine.up(SERVICES, env={"RETH_TIP": "19000000"})
    assert engine.running_services() == set(SERVICES)

    engine.down(SERVICES)
    assert engine.running_services() == set()

    calls = recorded_calls(tmp_path)
    assert calls[0] == {"argv": ["up", "--detach"] + SERVICES, "tip": "19000000"}
    assert ["down", "--volumes"] in [c["argv"] for c in calls]


def test_down_keeps_volumes_when_asked(tmp_path, make_engine):
    make_engine(remove_volumes=False).down(SERVICES)
    assert recorded_calls(tmp_path)[0]["argv"] == ["down"]


def test_compose_file_is_passed(tmp_path, make_engine):
    write_compose(tmp_path, name="compose.dev.yml")
    make_engine(compose_file="compose.dev.yml").up(SERVICES)
    assert recorded_calls(tmp_path)[0]["argv"][:2] == ["-f", "compose.dev.yml"]


def test_up_without_compose_file(tmp_path, make_engine):
    with pytest.raises(DriverError, match="not found"):
        make_engine().up(SERVICES)
    assert recorded_calls(tmp_path) == []


def test_up_with_incomplete_definition(tmp_path, make_engine):
    write_compose(tmp_path, services=["reth"])
    with pytest.raises(DriverError, match="grafana"):
        make_engine().up(SERVICES)
    assert recorded_calls(tmp_path) == []


def test_up_with_unpublished_port(tmp_path, make_engine):
    write_compose(tmp_path, ports=dict(PORTS, grafana=["3300:3000"]))
    with pytest.raises(DriverError, match="grafana:3000"):
        make_engine().up(SERVICES)
    assert recorded_calls(tmp_path) == []


def test_up_checks_configured_ports(tmp_path, make_engine):
    write_compose(tmp_path, ports=dict(PORTS, grafana=["3300:3000"]))
    make_engine(grafana_port=3300).up(SERVICES)
    assert recorded_calls(tmp_path)[0]["argv"][0] == "up"


def test_failing_command(tmp_path, make_engine, monkeypatch):
    write_compose(tmp_path)
    monkeypatch.setenv("FAKE_COMPOSE_FAIL", "up")
    with pytest.raises(DriverError) as excinfo:
        make_engine().up(SERVICES)
    assert excinfo.value.returncode == 1
    assert "Error response from daemon" in str(excinfo.value)


def test_engine_not_installed(tmp_path):
    engine = ComposeCliEngine(StackConfig(working_dir=str(tmp_path)), command=("nodestack-no-such-compose",))
    with pytest.raises(DriverError, match="Container engine unavailable"):
        engine.running_services()


def test_missing_working_dir(tmp_path):
    config = StackConfig(working_dir=str(tmp_path / "absent"))
    engine = ComposeCliEngine(config, command=(sys.executable, FAKE_COMPOSE))
    with pytest.raises(DriverError):
        engine.running_services()


def test_read_logs(tmp_path, make_engine):
    (tmp_path / "reth.log").write_text("INFO a\nWARN b\nERROR c\n")
    engine = make_engine()
    assert engine.read_logs("reth", tail=2) == ["WARN b", "ERROR c"]
    assert engine.read_logs("reth") == ["INFO a", "WARN b", "ERROR c"]
    assert engine.read_logs("grafana") == []


def test_read_logs_unavailable(make_engine, monkeypatch):
    monkeypatch.setenv("FAKE_COMPOSE_FAIL", "logs")
    with pytest.raises(StreamError):
        make_engine().read_logs("reth")


def test_log_stream_and_close(make_engine):
    handle = make_engine().open_log_stream("reth")
    try:
        assert handle.read_line(timeout=5) == "INFO tick 1"
        assert handle.read_line(timeout=5) == "INFO tick 2"
    finally:
        handle.close()
    assert handle.process.poll() is not None
    handle.close()


def test_follow_session_over_process(make_engine):
    streamer = LogStreamer(make_engine(), poll_interval=0.05)
    with streamer.follow("reth") as session:
        texts = []
        for line in session:
            texts.append(line.text)
            if len(texts) == 3:
                break
    assert texts == ["INFO tick 1", "INFO tick 2", "INFO tick 3"]
    assert streamer.open_handles == 0
