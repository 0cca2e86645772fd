import logging
import uuid
from contextvars import ContextVar

trace_id_var: ContextVar[str] = ContextVar("trace_id", default="-")


class AddTraceIdFilter(logging.Filter):
    """Attach the trace id of the current asyncio context to each log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.traceid = trace_id_var.get()
        return True


def get_trace_id_name(prefix: str) -> str:
    return f"{prefix}-{str(uuid.uuid4())[:5]}"
