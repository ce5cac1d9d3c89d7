"""Structured logging configuration for the Chief of Staff engine."""
import contextvars
import logging
import uuid

import structlog

run_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("run_id", default="")


def new_run_id() -> str:
    """Generate a new agent-run ID."""
    return str(uuid.uuid4())[:8]


def add_run_id(logger, method_name, event_dict):
    """Structlog processor to add the active run ID."""
    rid = run_id_var.get("")
    if rid:
        event_dict["run_id"] = rid
    return event_dict


class RunIdFilter(logging.Filter):
    """Stamp stdlib records with the active run ID."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.run_id = run_id_var.get("") or "-"
        return True


def configure_logging(level: int = logging.INFO) -> None:
    """Configure stdlib logging and structlog."""
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(name)s] [%(run_id)s] %(levelname)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        force=True,
    )
    for handler in logging.root.handlers:
        handler.addFilter(RunIdFilter())

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            add_run_id,
            structlog.dev.ConsoleRenderer() if level <= logging.DEBUG else structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
    )


def get_event_logger(name: str):
    """Return a structlog logger for structured run events (audit, usage)."""
    return structlog.get_logger(name)
