"""Unit tests for Rust-style error formatting and collection."""

from __future__ import annotations

import sys
from collections.abc import Iterator
from io import StringIO
from unittest import mock

import pytest

from chronoqueue.core.errors import (
    ChronoqueueError,
    ConfigurationError,
    ErrorCode,
    InvalidTaskStateError,
    MultipleValidationErrors,
    ValidationReport,
    _chronoqueue_excepthook,
    _should_use_colors,
    install_error_handler,
    raise_collected,
    uninstall_error_handler,
)

pytestmark = pytest.mark.unit


@pytest.fixture(autouse=True)
def _restore_excepthook() -> Iterator[None]:
    original = sys.excepthook
    yield
    sys.excepthook = original


class TestFormatRustStyle:
    def test_plain_format(self) -> None:
        err = ConfigurationError(
            message='bad pool',
            code=ErrorCode.CONFIG_INVALID_POOL,
            notes=['worker_count=0'],
            help_text='use at least one worker',
        )
        text = err.format_rust_style(use_colors=False)
        assert 'error[E200]: bad pool' in text
        assert '= note: worker_count=0' in text
        assert '= help:' in text
        assert 'use at least one worker' in text
        assert '\033[' not in text

    def test_str_has_no_colors(self) -> None:
        err = ChronoqueueError(message='boom', code=ErrorCode.TASK_NOT_FOUND)
        assert '\033[' not in str(err)
        assert 'error[E400]: boom' in str(err)

    def test_without_code(self) -> None:
        err = ChronoqueueError(message='plain')
        assert 'error: plain' in err.format_rust_style(use_colors=False)

    def test_multiline_note_indented(self) -> None:
        err = ChronoqueueError(message='m', notes=['first\nsecond'])
        lines = err.format_rust_style(use_colors=False).splitlines()
        assert any(line.endswith('note: first') for line in lines)
        assert '          second' in lines

    def test_fluent_api(self) -> None:
        err = ChronoqueueError(message='m').with_note('n1').with_help('h')
        assert err.notes == ['n1']
        assert err.help_text == 'h'

    def test_extra_fields_on_subclass(self) -> None:
        err = InvalidTaskStateError(
            message='not failed',
            code=ErrorCode.TASK_INVALID_STATE,
            task_id=7,
            status='pending',
        )
        assert err.task_id == 7
        assert err.status == 'pending'
        assert isinstance(err, ChronoqueueError)


class TestColors:
    def test_no_color_env_disables(self) -> None:
        with mock.patch.dict('os.environ', {'NO_COLOR': '1'}, clear=True):
            assert _should_use_colors() is False

    def test_force_color_env_enables(self) -> None:
        with mock.patch.dict('os.environ', {'CHRONOQUEUE_FORCE_COLOR': '1'}, clear=True):
            assert _should_use_colors() is True


class TestCollection:
    def _err(self, msg: str) -> ConfigurationError:
        return ConfigurationError(message=msg, code=ErrorCode.CONFIG_INVALID_POOL)

    def test_no_errors_is_noop(self) -> None:
        raise_collected(ValidationReport('config'))

    def test_has_errors(self) -> None:
        report = ValidationReport('config')
        assert report.has_errors() is False
        report.add(self._err('one'))
        assert report.has_errors() is True

    def test_single_error_raised_as_is(self) -> None:
        report = ValidationReport('config')
        report.add(self._err('one'))
        with pytest.raises(ConfigurationError, match='one'):
            raise_collected(report)

    def test_multiple_errors_wrapped(self) -> None:
        report = ValidationReport('config')
        report.add(self._err('one'))
        report.add(self._err('two'))
        with pytest.raises(MultipleValidationErrors) as exc_info:
            raise_collected(report)
        text = exc_info.value.format_rust_style(use_colors=False)
        assert 'one' in text and 'two' in text
        assert 'aborting due to 2 previous errors' in text


class TestExcepthook:
    def test_install_and_uninstall(self) -> None:
        install_error_handler()
        assert sys.excepthook is _chronoqueue_excepthook
        uninstall_error_handler()
        assert sys.excepthook is not _chronoqueue_excepthook

    def test_hook_prints_rust_style(self) -> None:
        err = ChronoqueueError(message='hooked', code=ErrorCode.CLI_INVALID_ARGS)
        buf = StringIO()
        with (
            mock.patch('sys.stderr', buf),
            mock.patch.dict('os.environ', {'NO_COLOR': '1'}, clear=True),
        ):
            _chronoqueue_excepthook(type(err), err, None)
        assert 'error[E206]: hooked' in buf.getvalue()

    def test_hook_defers_for_other_exceptions(self) -> None:
        with mock.patch('chronoqueue.core.errors._original_excepthook') as original:
            exc = ValueError('x')
            _chronoqueue_excepthook(ValueError, exc, None)
        original.assert_called_once_with(ValueError, exc, None)
