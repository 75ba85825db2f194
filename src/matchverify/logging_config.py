"""Logging configuration for match-verify commands.

Console shows INFO+ with concise timestamps; a per-command log file
captures DEBUG+ (including per-frame scan misses and poll ticks) with
full timestamps and logger names.
"""

import logging
from datetime import datetime
from pathlib import Path


def setup_logging(
    data_dir: str = "data",
    console_level: int = logging.INFO,
    run_name: str = "run",
) -> Path:
    """Configure logging with console and file handlers.

    The log file is ``{data_dir}/logs/{run_name}-{timestamp}.log`` so a
    host session and a scanner running side by side write separate files.
    Existing root handlers are cleared first so repeated calls (e.g. in
    tests) do not duplicate output.

    Returns:
        Path to the newly created log file.
    """
    log_dir = Path(data_dir) / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y-%m-%d-%H%M%S")
    log_file = log_dir / f"{run_name}-{timestamp}.log"

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    root.handlers.clear()

    console = logging.StreamHandler()
    console.setLevel(console_level)
    console.setFormatter(
        logging.Formatter(
            "%(asctime)s %(levelname)-5s %(message)s",
            datefmt="%H:%M:%S",
        )
    )
    root.addHandler(console)

    file_handler = logging.FileHandler(str(log_file), encoding="utf-8")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(
        logging.Formatter("%(asctime)s %(levelname)-5s [%(name)s] %(message)s")
    )
    root.addHandler(file_handler)

    # asyncio debug chatter drowns out scan/poll logs
    logging.getLogger("asyncio").setLevel(logging.WARNING)

    return log_file
