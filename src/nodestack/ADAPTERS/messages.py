"""
Result messages shared by the remote and interactive surfaces.
"""
from typing import Dict

from ..MODELS.job_result import JobResult
from ..MODELS.stack_state import StackPhase, StackSnapshot


def start_result(snapshot: StackSnapshot, urls: Dict[str, str]) -> JobResult:
    if snapshot.phase == StackPhase.RUNNING:
        return JobResult.ok(
            "Node stack started successfully.\n\n"
            f"Monitoring dashboard available at: {urls['grafana']}\n"
            "Login with username: admin, password: admin\n"
            f"Prometheus: {urls['prometheus']}\n"
            f"Metrics endpoint: {urls['metrics']}\n"
            f"RPC endpoint: {urls['rpc']}"
        )
    return JobResult.failure(
        f"Failed to start node stack ({snapshot.phase.value}): {snapshot.last_error or 'unknown error'}"
    )


def stop_result(snapshot: StackSnapshot) -> JobResult:
    if snapshot.phase == StackPhase.STOPPED and not snapshot.last_error:
        return JobResult.ok("Node stack stopped successfully. All containers and volumes removed.")
    return JobResult.failure(
        f"Node stack {snapshot.phase.value} with errors: {snapshot.last_error or 'unknown error'}"
    )
