# chronoqueue/core/logging.py
import logging
import os
import sys
from datetime import datetime
from typing import Optional, TextIO

from chronoqueue.core.errors import _env_flag

# Module-level default log level, can be changed by set_default_level()
_default_level: int = logging.INFO

_ROOT_LOGGER_NAME = 'chronoqueue'


def _stream_supports_color(stream: TextIO) -> bool:
    """Colors on a TTY unless NO_COLOR is set; CHRONOQUEUE_FORCE_COLOR wins."""
    if _env_flag('CHRONOQUEUE_FORCE_COLOR'):
        return True
    if os.environ.get('NO_COLOR') is not None:
        return False
    return hasattr(stream, 'isatty') and stream.isatty()


class ColoredFormatter(logging.Formatter):
    """
    Tabular formatter for chronoqueue logs: ``[time] [component] [LEVEL] message``.

    Pool output interleaves several workers, so the component column is padded
    to keep messages aligned. With ``use_colors=False`` the same layout is
    emitted without ANSI codes (log files, CI).
    """

    # ANSI color codes
    COLORS = {
        'RESET': '\033[0m',
        'LIGHT_BLUE': '\033[94m',
        'WHITE': '\033[97m',
        'GRAY': '\033[90m',
        'GREEN': '\033[92m',
        'YELLOW': '\033[93m',
        'RED': '\033[91m',
        'BRIGHT_RED': '\033[1;91m',
    }

    LEVEL_COLORS = {
        'DEBUG': COLORS['GRAY'],
        'INFO': COLORS['GREEN'],
        'WARNING': COLORS['YELLOW'],
        'ERROR': COLORS['RED'],
        'CRITICAL': COLORS['BRIGHT_RED'],
    }

    def __init__(self, use_colors: bool = True) -> None:
        super().__init__()
        self.use_colors = use_colors

    def _color(self, name: str) -> str:
        return self.COLORS[name] if self.use_colors else ''

    def format(self, record: logging.LogRecord) -> str:
        time_str = datetime.fromtimestamp(record.created).strftime('%H:%M:%S')

        # 'chronoqueue.worker' -> 'worker'
        component = record.name.split('.')[-1] if '.' in record.name else record.name

        # [dispatch] = 10 chars
        component_padded = f'[{component}]'.ljust(12)
        level_padded = f'[{record.levelname}]'.ljust(10)

        reset = self._color('RESET')
        white = self._color('WHITE')
        level_color = (
            self.LEVEL_COLORS.get(record.levelname, self.COLORS['WHITE'])
            if self.use_colors
            else ''
        )

        formatted = (
            f"{self._color('LIGHT_BLUE')}[{time_str}]{reset} "
            f'{white}{component_padded}{reset}'
            f'{level_color}{level_padded}{reset}'
            f'{white}{record.getMessage()}{reset}'
        )

        if record.exc_info:
            formatted += '\n' + self.formatException(record.exc_info)

        return formatted


def set_default_level(level: int) -> None:
    """Set the default log level for new loggers."""
    global _default_level
    _default_level = level


def apply_level(level: int) -> None:
    """Set the level on every chronoqueue logger created so far, and on new ones."""
    set_default_level(level)
    for name in list(logging.Logger.manager.loggerDict):
        if isinstance(name, str) and (
            name == _ROOT_LOGGER_NAME or name.startswith(f'{_ROOT_LOGGER_NAME}.')
        ):
            lgr = logging.getLogger(name)
            lgr.setLevel(level)
            for handler in lgr.handlers:
                handler.setLevel(level)


def get_logger(component_name: str, stream: Optional[TextIO] = None) -> logging.Logger:
    """Get a logger for the specified component (``broker``, ``worker``, ``pool`` ...)."""
    logger = logging.getLogger(f'{_ROOT_LOGGER_NAME}.{component_name}')

    if not logger.handlers:
        out = stream if stream is not None else sys.stdout
        handler = logging.StreamHandler(out)
        handler.setFormatter(ColoredFormatter(use_colors=_stream_supports_color(out)))
        handler.setLevel(_default_level)
        logger.addHandler(handler)
        logger.setLevel(_default_level)

        # Prevent duplicate logs from parent loggers
        logger.propagate = False

    return logger
