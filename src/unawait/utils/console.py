"""
Logging and Console Output.

The lowering tool reports through the `unawait` logger of the standard
`logging` module, rendered by a `rich` handler bound to the active console.

The console is reached through a proxy: `set_console` swaps the rich console
underneath (tests use a recording console) and re-binds the handler, while
modules keep the `console` object they imported.
"""

import logging
from typing import Any

from rich.console import Console
from rich.logging import RichHandler
from rich.theme import Theme

LOGGER_NAME = "unawait"
SUCCESS = 25
logging.addLevelName(SUCCESS, "SUCCESS")

_THEME = Theme(
  {
    "logging.level.success": "green",
    "path": "bold blue",
    "code": "bold magenta",
  }
)

logger = logging.getLogger(LOGGER_NAME)


def _new_console() -> Console:
  return Console(theme=_THEME, stderr=True)


class _ConsoleProxy:
  """
  Stable handle on a replaceable `rich.console.Console`.

  Lowered code printed by the CLI goes to stdout; every log record goes to
  the proxied console, stderr by default.
  """

  def __init__(self) -> None:
    self._backend = _new_console()
    self._bind()

  @property
  def backend(self) -> Console:
    return self._backend

  def swap(self, backend: Console) -> None:
    self._backend = backend
    self._bind()

  def _bind(self) -> None:
    for handler in list(logger.handlers):
      if isinstance(handler, RichHandler):
        logger.removeHandler(handler)
    logger.addHandler(RichHandler(console=self._backend, show_time=False, show_path=False, markup=True))
    logger.propagate = False
    if logger.level == logging.NOTSET:
      logger.setLevel(logging.INFO)

  def print(self, *args: Any, **kwargs: Any) -> None:
    self._backend.print(*args, **kwargs)

  def __getattr__(self, name: str) -> Any:
    return getattr(self._backend, name)


console = _ConsoleProxy()


def set_console(new_console: Console) -> None:
  """
  Sends console output and log records to `new_console`.

  Args:
      new_console (Console): The Rich console to use from now on.
  """
  console.swap(new_console)


def reset_console() -> None:
  console.swap(_new_console())
  logger.setLevel(logging.INFO)


def set_verbosity(level: int) -> None:
  """
  Adjusts how much the tool reports.

  Args:
      level (int): Negative hides everything but errors, zero is the default
          (successes and warnings included), positive adds debug records.
  """
  if level < 0:
    logger.setLevel(logging.ERROR)
  elif level > 0:
    logger.setLevel(logging.DEBUG)
  else:
    logger.setLevel(logging.INFO)


def log_debug(msg: str) -> None:
  logger.debug(msg, extra={"markup": True})


def log_info(msg: str) -> None:
  """
  Logs an informational message.

  Args:
      msg (str): Message text, may contain rich markup.
  """
  logger.info(msg, extra={"markup": True})


def log_success(msg: str) -> None:
  logger.log(SUCCESS, msg, extra={"markup": True})


def log_warning(msg: str) -> None:
  logger.warning(msg, extra={"markup": True})


def log_error(msg: str) -> None:
  logger.error(msg, extra={"markup": True})
