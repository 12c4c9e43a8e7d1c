"""Rust-style error display for chronoqueue configuration and operation errors."""

from __future__ import annotations

import os
import sys
import traceback
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Error codes for chronoqueue errors.

    Organized by category:
    - E100-E199: Task and payload errors
    - E200-E299: Config/broker errors
    - E300-E399: Handler registry errors
    - E400-E499: Queue administration and pool state errors
    """

    # Task and payload (E100-E199)
    PAYLOAD_INVALID = 'E100'
    PAYLOAD_UNKNOWN_TYPE = 'E101'
    TASK_INVALID_OPTIONS = 'E102'
    BATCH_INVALID_SIZE = 'E103'

    # Config/broker (E200-E299)
    CONFIG_INVALID_POOL = 'E200'
    CONFIG_INVALID_BACKOFF = 'E201'
    BROKER_INVALID_URL = 'E203'
    CLI_INVALID_ARGS = 'E206'
    APP_INVALID_LOCATOR = 'E207'

    # Registry (E300-E399)
    HANDLER_NOT_REGISTERED = 'E300'
    HANDLER_DUPLICATE = 'E301'

    # Administration / pool (E400-E499)
    TASK_NOT_FOUND = 'E400'
    TASK_INVALID_STATE = 'E401'
    ADMIN_INVALID_ARGUMENT = 'E402'
    POOL_NOT_RUNNING = 'E403'


# ANSI color codes
class _Colors:
    """ANSI escape codes for terminal colors."""

    RESET = '\033[0m'
    BOLD = '\033[1m'
    RED = '\033[91m'
    BLUE = '\033[94m'
    GREEN = '\033[92m'
    DIM = '\033[2m'


class _NoColors:
    """No-op color codes for non-TTY output."""

    RESET = ''
    BOLD = ''
    RED = ''
    BLUE = ''
    GREEN = ''
    DIM = ''


def _env_flag(name: str) -> bool:
    return os.environ.get(name, '').lower() in ('1', 'true', 'yes')


def _should_use_colors() -> bool:
    """Determine if colors should be used in output."""
    if _env_flag('CHRONOQUEUE_FORCE_COLOR'):
        return True

    # NO_COLOR standard (https://no-color.org/)
    if os.environ.get('NO_COLOR') is not None:
        return False

    return hasattr(sys.stderr, 'isatty') and sys.stderr.isatty()


@dataclass
class ChronoqueueError(Exception):
    """Base exception for chronoqueue errors.

    Carries an error code, notes and help text, rendered as:

        error[E100]: message
           = note: ...

           = help:
                ...
    """

    message: str
    code: ErrorCode | None = None
    notes: list[str] = field(default_factory=lambda: [])
    help_text: str | None = None

    def __post_init__(self) -> None:
        super().__init__(self.message)

    def with_note(self, note: str) -> ChronoqueueError:
        """Add a note to the error (fluent API)."""
        self.notes.append(note)
        return self

    def with_help(self, help_text: str) -> ChronoqueueError:
        """Set help text (fluent API)."""
        self.help_text = help_text
        return self

    def format_rust_style(self, use_colors: bool | None = None) -> str:
        """Format the error in Rust style."""
        if use_colors is None:
            use_colors = _should_use_colors()

        c = _Colors if use_colors else _NoColors
        lines: list[str] = ['']

        code_part = f'[{self.code.value}]' if self.code else ''
        lines.append(f'{c.BOLD}{c.RED}error{code_part}:{c.RESET} {self.message}')

        # Notes (multi-line notes get continuation indentation)
        for note in self.notes:
            note_lines = note.split('\n')
            lines.append(
                f'   {c.BLUE}={c.RESET} {c.BOLD}{c.BLUE}note{c.RESET}: {note_lines[0]}'
            )
            for note_line in note_lines[1:]:
                lines.append(f'          {note_line}')

        if self.help_text:
            lines.append('')
            lines.append(f'   {c.BLUE}={c.RESET} {c.BOLD}{c.GREEN}help{c.RESET}:')
            for help_line in self.help_text.split('\n'):
                lines.append(f'        {help_line}')

        return '\n'.join(lines)

    def __str__(self) -> str:
        """Plain text (no ANSI colors), safe for logs and stored error messages."""
        return self.format_rust_style(use_colors=False)


_original_excepthook = sys.excepthook


def _chronoqueue_excepthook(
    exc_type: type[BaseException],
    exc_value: BaseException,
    exc_tb: Any,
) -> None:
    """Custom exception hook for ChronoqueueError exceptions."""
    if _env_flag('CHRONOQUEUE_PLAIN_ERRORS') or not isinstance(
        exc_value, ChronoqueueError
    ):
        _original_excepthook(exc_type, exc_value, exc_tb)
        return

    print(exc_value.format_rust_style(), file=sys.stderr)
    if _env_flag('CHRONOQUEUE_VERBOSE'):
        c = _Colors if _should_use_colors() else _NoColors
        print(file=sys.stderr)
        print(
            f'{c.DIM}Full traceback (CHRONOQUEUE_VERBOSE=1):{c.RESET}',
            file=sys.stderr,
        )
        traceback.print_exception(exc_type, exc_value, exc_tb, file=sys.stderr)


def install_error_handler() -> None:
    """Install the custom exception hook for Rust-style error display."""
    sys.excepthook = _chronoqueue_excepthook


def uninstall_error_handler() -> None:
    """Restore the original exception hook."""
    sys.excepthook = _original_excepthook


# =============================================================================
# Specific Error Classes
# =============================================================================


@dataclass
class ConfigurationError(ChronoqueueError):
    """Raised when app/broker/pool configuration is invalid."""

    pass


@dataclass
class PayloadValidationError(ChronoqueueError):
    """Raised when a task payload is structurally invalid."""

    pass


@dataclass
class TaskOptionsError(ChronoqueueError):
    """Raised when priority or max_attempts is out of range."""

    pass


@dataclass
class RegistryError(ChronoqueueError):
    """Raised when a stage handler registry operation fails."""

    pass


@dataclass
class TaskNotFoundError(ChronoqueueError):
    """Raised when an administrative operation targets a missing task."""

    task_id: int | None = None


@dataclass
class InvalidTaskStateError(ChronoqueueError):
    """Raised when a task is not in the status an operation requires."""

    task_id: int | None = None
    status: str | None = None


@dataclass
class InvalidArgumentError(ChronoqueueError):
    """Raised when an administrative operation gets unusable arguments."""

    pass


@dataclass
class PoolNotRunningError(ChronoqueueError):
    """Raised when work is delegated to a pool that has no workers."""

    pass


# =============================================================================
# Phase-Gated Error Collection
# =============================================================================


class ValidationReport:
    """Collects multiple ChronoqueueError instances within a validation phase."""

    def __init__(self, phase_name: str) -> None:
        self.phase_name: str = phase_name
        self.errors: list[ChronoqueueError] = []

    def add(self, error: ChronoqueueError) -> None:
        self.errors.append(error)

    def has_errors(self) -> bool:
        return len(self.errors) > 0

    def format_rust_style(self, use_colors: bool | None = None) -> str:
        """Format all collected errors, then append an aborting summary."""
        if use_colors is None:
            use_colors = _should_use_colors()

        c = _Colors if use_colors else _NoColors
        parts = [e.format_rust_style(use_colors=use_colors) for e in self.errors]
        parts.append(
            f'\n{c.BOLD}{c.RED}error{c.RESET}: aborting due to '
            f'{len(self.errors)} previous errors'
        )
        return '\n'.join(parts)

    def __str__(self) -> str:
        return self.format_rust_style(use_colors=False)


@dataclass
class MultipleValidationErrors(ChronoqueueError):
    """Wraps a ValidationReport containing 2+ errors."""

    report: ValidationReport = field(default_factory=lambda: ValidationReport(''))

    def format_rust_style(self, use_colors: bool | None = None) -> str:
        return self.report.format_rust_style(use_colors=use_colors)


def raise_collected(report: ValidationReport) -> None:
    """Raise collected errors.

    - 0 errors: no-op
    - 1 error: raises the original error (preserves except clauses)
    - 2+ errors: raises MultipleValidationErrors wrapping the report
    """
    if not report.has_errors():
        return
    count = len(report.errors)
    if count == 1:
        raise report.errors[0]
    raise MultipleValidationErrors(
        message=f'aborting due to {count} previous errors',
        report=report,
    )
