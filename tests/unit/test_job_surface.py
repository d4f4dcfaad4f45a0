import json

import pytest

from nodestack.ADAPTERS.job_surface import START_JOB_ID, STOP_JOB_ID, JobTransport, RemoteJobSurface
from nodestack.MODELS.stack_state import StackPhase


class RecordingTransport(JobTransport):
    def __init__(self):
        self.handlers = {}

    def register(self, job_id, handler):
        self.handlers[job_id] = handler


@pytest.fixture
def surface(orchestrator):
    return RemoteJobSurface(orchestrator)


def test_only_state_changing_jobs_are_routed(surface):
    assert set(surface.routes()) == {START_JOB_ID, STOP_JOB_ID}


def test_attach_registers_start_and_stop(surface):
    transport = RecordingTransport()
    surface.attach(transport)
    assert set(transport.handlers) == {1, 2}


def test_start_reports_endpoints(surface, orchestrator, config):
    result = surface.handle(START_JOB_ID)
    assert result.success
    assert config.endpoints()["grafana"] in result.message
    assert "admin" in result.message
    assert orchestrator.phase == StackPhase.RUNNING


def test_start_with_tip_payload(surface, engine):
    tip = "0x" + "01" * 32
    assert surface.handle(START_JOB_ID, tip.encode("utf-8") + b"\n").success
    assert engine.envs == [{"RETH_TIP": tip}]


def test_blank_payload_means_no_tip(surface, engine):
    assert surface.handle(START_JOB_ID, b"  ").success
    assert engine.envs == [None]


def test_invalid_tip_is_a_failure_result(surface, engine):
    result = surface.handle(START_JOB_ID, "yesterday")
    assert not result.success
    assert "yesterday" in result.message
    assert engine.calls == []


def test_non_utf8_payload(surface, engine):
    result = surface.handle(START_JOB_ID, b"\xff\xfe")
    assert not result.success
    assert engine.calls == []


def test_failed_start(make_orchestrator, config, board):
    surface = RemoteJobSurface(make_orchestrator(config.with_overrides(startup_timeout=0.2)))
    board.down("reth")
    result = surface.start()
    assert not result.success
    assert result.message.startswith("Failed to start node stack (failed)")
    assert "reth" in result.message


def test_stop(surface, engine):
    surface.start()
    result = surface.handle(STOP_JOB_ID)
    assert result.success
    assert "stopped successfully" in result.message
    assert engine.running == set()


def test_stop_with_teardown_error(surface, engine):
    surface.start()
    engine.fail_down = "grafana"
    result = surface.stop()
    assert not result.success
    assert "stopped with errors" in result.message


def test_unknown_job(surface, engine):
    result = surface.handle(3)
    assert not result.success
    assert "Unknown job id 3" in result.message
    assert engine.calls == []


def test_result_serializes(surface):
    payload = json.loads(surface.handle(STOP_JOB_ID).to_bytes())
    assert payload["success"] is True
    assert "message" in payload
