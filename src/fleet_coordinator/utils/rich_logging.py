"""Console/file logging with agent and workspace context."""

import logging
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional


class FleetLogFormatter(logging.Formatter):
    """Formats records as `HH:MM:SS LEVEL [agent] [owner/repo#N] [task N] message`."""

    LEVEL_COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }

    def __init__(self, agent_id: str, use_colors: bool = True):
        super().__init__()
        self.agent_id = agent_id
        self.use_colors = use_colors

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")

        context = ""
        if getattr(record, "workspace", None):
            context += f"[{record.workspace}] "
        if getattr(record, "task_number", None) is not None:
            context += f"[task {record.task_number}] "

        if self.use_colors:
            color = self.LEVEL_COLORS.get(record.levelname, "")
            reset = "\033[0m"
        else:
            color = reset = ""

        return (
            f"{timestamp} {color}{record.levelname:8s}{reset} "
            f"[{self.agent_id}] {context}{record.getMessage()}"
        )


class ContextLogger(logging.LoggerAdapter):
    """Adapter that stamps the current workspace/task onto every record."""

    def __init__(self, logger: logging.Logger, agent_id: str):
        super().__init__(logger, {})
        self.agent_id = agent_id
        self.workspace: Optional[str] = None
        self.task_number: Optional[int] = None

    def set_context(self, workspace: Optional[str] = None, task_number: Optional[int] = None):
        if workspace is not None:
            self.workspace = workspace
        if task_number is not None:
            self.task_number = task_number

    def clear_context(self):
        self.workspace = None
        self.task_number = None

    def process(self, msg, kwargs):
        extra = kwargs.get("extra", {})
        if self.workspace:
            extra["workspace"] = self.workspace
        if self.task_number is not None:
            extra["task_number"] = self.task_number
        kwargs["extra"] = extra
        return msg, kwargs


def setup_rich_logging(
    agent_id: str,
    state_dir: Path,
    log_level: str = "INFO",
    use_file: bool = True,
    use_json: bool = False,
) -> ContextLogger:
    """
    Configure the coordinator's logger.

    Args:
        agent_id: Identity shown on every line (usually the GitHub username)
        state_dir: Coordinator state directory; logs go to <state_dir>/logs
        log_level: DEBUG, INFO, WARNING or ERROR
        use_file: Also write a plain-text log file
        use_json: Emit one JSON object per line instead of the coloured format

    Returns:
        ContextLogger wrapping the configured logger
    """
    logger = logging.getLogger("fleet_coordinator")
    logger.setLevel(getattr(logging, log_level.upper()))

    for handler in logger.handlers[:]:
        handler.close()
        logger.removeHandler(handler)

    if use_json:
        formatter = logging.Formatter(
            '{"timestamp":"%(asctime)s","agent":"%(agent)s","level":"%(levelname)s",'
            '"message":"%(message)s","module":"%(module)s"}',
            defaults={"agent": agent_id},
        )
    else:
        formatter = FleetLogFormatter(agent_id, use_colors=sys.stdout.isatty())

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if use_file:
        log_dir = Path(state_dir) / "logs"
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_dir / f"{agent_id}-{os.getpid()}.log")
        file_handler.setFormatter(FleetLogFormatter(agent_id, use_colors=False))
        logger.addHandler(file_handler)

    return ContextLogger(logger, agent_id)
