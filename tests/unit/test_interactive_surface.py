import pytest

from nodestack.ADAPTERS.interactive_surface import InteractiveSurface
from nodestack.errors import MetricsUnavailable
from nodestack.MANAGERS.metrics_client import MetricsClient, parse_exposition
from nodestack.MODELS.stack_state import StackPhase
from nodestack.UTILS.port_finder import get_free_port

EXPOSITION = b"""# HELP reth_sync_checkpoint Latest checkpoint
# TYPE reth_sync_checkpoint gauge
reth_sync_checkpoint{stage="Headers"} 19000000
reth_network_connected_peers 12

process_resident_memory_bytes 1.2e+09
"""


def test_parse_exposition():
    assert parse_exposition(EXPOSITION.decode()) == {
        'reth_sync_checkpoint{stage="Headers"}': "19000000",
        "reth_network_connected_peers": "12",
        "process_resident_memory_bytes": "1.2e+09",
    }


def test_parse_exposition_skips_malformed_lines():
    assert parse_exposition("lonely_name\n# comment\n") == {}


class TestMetrics:

    def test_passthrough_when_running(self, orchestrator, http_server):
        http_server.routes["/"] = (200, EXPOSITION, "text/plain; version=0.0.4")
        surface = InteractiveSurface(orchestrator, metrics=MetricsClient(http_server.url + "/"))
        orchestrator.start()
        metrics = surface.metrics()
        assert metrics["reth_network_connected_peers"] == "12"

    def test_not_running(self, orchestrator, http_server):
        surface = InteractiveSurface(orchestrator, metrics=MetricsClient(http_server.url + "/"))
        with pytest.raises(MetricsUnavailable, match="not running"):
            surface.metrics()

    def test_engine_unreachable(self, orchestrator, engine):
        engine.unreachable = True
        with pytest.raises(MetricsUnavailable):
            InteractiveSurface(orchestrator).metrics()

    def test_endpoint_down(self, orchestrator):
        client = MetricsClient(f"http://127.0.0.1:{get_free_port()}/", timeout=0.5)
        surface = InteractiveSurface(orchestrator, metrics=client)
        orchestrator.start()
        with pytest.raises(MetricsUnavailable, match="Failed to get metrics"):
            surface.metrics()

    def test_endpoint_error_status(self, orchestrator, http_server):
        surface = InteractiveSurface(orchestrator, metrics=MetricsClient(http_server.url + "/missing"))
        orchestrator.start()
        with pytest.raises(MetricsUnavailable):
            surface.metrics()

    def test_default_client_uses_configured_port(self, orchestrator, config):
        assert InteractiveSurface(orchestrator).metrics_client.url == config.endpoints()["metrics"]


class TestGrafana:

    def test_ready(self, orchestrator, config):
        result = InteractiveSurface(orchestrator).grafana()
        assert result.success
        assert config.endpoints()["grafana"] in result.message

    def test_not_ready(self, orchestrator, board):
        board.down("grafana")
        result = InteractiveSurface(orchestrator).grafana()
        assert not result.success
        assert "unhealthy" in result.message


def test_lifecycle_through_surface(orchestrator, engine):
    surface = InteractiveSurface(orchestrator)
    assert surface.start().success
    assert surface.status().phase == StackPhase.RUNNING
    engine.log_lines["reth"] = ["INFO Status connected_peers=3"]
    assert surface.logs(lines=1)[0].text.endswith("connected_peers=3")
    assert surface.stop().success
    assert surface.status().phase == StackPhase.STOPPED
    assert set(surface.urls()) == {"rpc", "metrics", "prometheus", "grafana"}
