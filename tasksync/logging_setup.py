from __future__ import annotations

import logging
import sys

from tasksync.config import settings


def setup_logging(level: str | int | None = None) -> None:
  """
  Configure root logging once for a process embedding tasksync.

  Pre-existing root handlers are removed so repeated calls do not duplicate output.
  """
  lvl = level if level is not None else settings.log_level
  if isinstance(lvl, str):
    lvl = logging.getLevelName(lvl.upper())
    if not isinstance(lvl, int):
      lvl = logging.INFO

  root = logging.getLogger()
  root.setLevel(lvl)
  for h in list(root.handlers):
    root.removeHandler(h)

  handler = logging.StreamHandler(sys.stderr)
  handler.setFormatter(
    logging.Formatter(
      fmt="%(asctime)s.%(msecs)03d %(levelname)s %(name)s: %(message)s",
      datefmt="%Y-%m-%d %H:%M:%S",
    )
  )
  root.addHandler(handler)
  logging.captureWarnings(True)

  # httpx logs every request at INFO
  logging.getLogger("httpx").setLevel(logging.WARNING)
