"""
Models for log lines read from running services.
"""
from enum import Enum

from pydantic import BaseModel, ConfigDict


class Severity(str, Enum):
    """Severity inferred from the text of a log line."""

    ERROR = "error"
    WARN = "warn"
    INFO = "info"
    DEBUG = "debug"
    UNKNOWN = "unknown"


class LogLine(BaseModel):
    """
    A single line emitted by a service.
    Not persisted; consumed by whoever asked for it.
    """
    model_config = ConfigDict(frozen=True)

    service: str
    text: str
    severity: Severity = Severity.UNKNOWN
    sequence: int = 0
