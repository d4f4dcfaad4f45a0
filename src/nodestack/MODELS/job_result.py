"""
Structured result returned to job callers.
"""
from pydantic import BaseModel


class JobResult(BaseModel):
    """
    Outcome of a start or stop job: a success flag and a diagnostic message.
    """
    success: bool
    message: str = ""

    @classmethod
    def ok(cls, message: str = "") -> "JobResult":
        return cls(success=True, message=message)

    @classmethod
    def failure(cls, message: str) -> "JobResult":
        return cls(success=False, message=message)

    def to_bytes(self) -> bytes:
        """JSON encoding carried back over the job transport."""
        return self.model_dump_json().encode("utf-8")
