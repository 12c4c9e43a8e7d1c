# chronoqueue/core/cli.py
"""
CLI for running the worker pool and administering the queue.

Every command takes a locator for a Chronoqueue instance:
    chronoqueue run app.queue:app
    chronoqueue run app/queue.py:app
    chronoqueue stats app.queue          (auto-discover the instance)

If cwd contains pyproject.toml, cwd is added to sys.path before import.
"""

import argparse
import asyncio
import logging
import os
import sys
from typing import Awaitable, Callable, Optional, Sequence

from chronoqueue.core.app import Chronoqueue
from chronoqueue.core.errors import ChronoqueueError, ConfigurationError, ErrorCode
from chronoqueue.core.logging import apply_level, get_logger
from chronoqueue.core.models.payloads import TASK_TYPES
from chronoqueue.core.models.tasks import TaskRecord
from chronoqueue.core.types.status import TaskStatus
from chronoqueue.core.utils.imports import (
    import_file_path,
    import_module_path,
    setup_sys_path_from_cwd,
)

LOG_LEVELS = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']


def parse_locator(locator: str) -> tuple[str, str | None]:
    """
    Split a locator into (module_path, attribute_name).

    - "app.queue:app" -> ("app.queue", "app")
    - "app/queue.py" -> ("app/queue.py", None)
    """
    if ':' in locator:
        module_part, attr = locator.rsplit(':', 1)
        return (module_part, attr or None)
    return (locator, None)


def _is_file_path(path: str) -> bool:
    return path.endswith('.py') or os.path.sep in path or '/' in path


def discover_app(locator: str) -> Chronoqueue:
    """Import the module named by `locator` and return its Chronoqueue instance."""
    logger = get_logger('cli')

    project_root = setup_sys_path_from_cwd()
    if project_root:
        logger.debug(f'Added project root to sys.path: {project_root}')

    module_path, attr_name = parse_locator(locator)

    if _is_file_path(module_path):
        if not module_path.endswith('.py'):
            module_path += '.py'
        try:
            module = import_file_path(module_path)
        except FileNotFoundError as e:
            raise ConfigurationError(
                message=f'module file not found: {module_path}',
                code=ErrorCode.APP_INVALID_LOCATOR,
                notes=[str(e)],
            )
    else:
        try:
            module = import_module_path(module_path)
        except ModuleNotFoundError as e:
            raise ConfigurationError(
                message=f'module not found: {module_path}',
                code=ErrorCode.APP_INVALID_LOCATOR,
                notes=[str(e)],
                help_text=(
                    'run from your project root\n'
                    'or set PYTHONPATH to include it'
                ),
            )
    module_name = module.__name__

    if attr_name:
        obj = getattr(module, attr_name, None)
        if obj is None:
            raise ConfigurationError(
                message=f"module '{module_name}' has no attribute '{attr_name}'",
                code=ErrorCode.APP_INVALID_LOCATOR,
            )
        if not isinstance(obj, Chronoqueue):
            raise ConfigurationError(
                message=f"'{attr_name}' in '{module_name}' is not a Chronoqueue instance",
                code=ErrorCode.APP_INVALID_LOCATOR,
                notes=[f'got {type(obj).__name__}'],
            )
        app = obj
    else:
        found = [
            (name, obj)
            for name, obj in vars(module).items()
            if not name.startswith('_') and isinstance(obj, Chronoqueue)
        ]
        if len(found) != 1:
            raise ConfigurationError(
                message=(
                    f'no Chronoqueue instance found in {module_name}'
                    if not found
                    else f'multiple Chronoqueue instances found in {module_name}'
                ),
                code=ErrorCode.APP_INVALID_LOCATOR,
                notes=[f'candidates: {[n for n, _ in found]}'] if found else [],
                help_text='specify the variable name: module.path:variable',
            )
        attr_name, app = found[0]

    logger.debug(f"Discovered chronoqueue '{attr_name}' from {module_name}")
    return app


def setup_logging(loglevel: str) -> None:
    """Apply the log level to every chronoqueue logger."""
    apply_level(getattr(logging, loglevel.upper(), logging.INFO))


def format_task(task: TaskRecord) -> str:
    detail = ''
    if task.status == TaskStatus.IN_STAGES and task.status_stage:
        detail = f'  stage={task.status_stage}'
    elif task.status == TaskStatus.FAILED and task.error_message:
        detail = f'  error={task.error_message}'
    return (
        f'{task.id:>8}  {task.task_type or "?":<24} {task.status.value:<10} '
        f'p={task.priority} attempts={task.attempts}/{task.max_attempts}  '
        f'{task.created_at:%Y-%m-%d %H:%M:%S}{detail}'
    )


async def _run_admin(
    app: Chronoqueue, op: Callable[[Chronoqueue], Awaitable[None]]
) -> None:
    try:
        await op(app)
    finally:
        await app.get_broker().close_async()


def run_command(args: argparse.Namespace) -> None:
    logger = get_logger('cli')
    app = discover_app(args.locator)
    app.config.log_config(logger)
    logger.info(f'Starting worker pool with loglevel={args.loglevel}')
    asyncio.run(app.run_forever())
    logger.info('Worker pool shut down')


def stats_command(args: argparse.Namespace) -> None:
    async def op(app: Chronoqueue) -> None:
        stats = await app.get_queue_stats()
        for status, count in stats.as_dict().items():
            print(f'{status:<10} {count}')
        print(f'{"total":<10} {stats.total}')

    asyncio.run(_run_admin(discover_app(args.locator), op))


def list_command(args: argparse.Namespace) -> None:
    async def op(app: Chronoqueue) -> None:
        tasks = await app.list_tasks(status=args.status, task_type=args.type)
        for task in tasks[: args.limit] if args.limit else tasks:
            print(format_task(task))
        print(f'{len(tasks)} task(s)')

    asyncio.run(_run_admin(discover_app(args.locator), op))


def retry_command(args: argparse.Namespace) -> None:
    async def op(app: Chronoqueue) -> None:
        if args.all:
            result = await app.retry_failed()
        elif len(args.task_ids) == 1:
            task = await app.retry_task(args.task_ids[0])
            print(f'Task {task.id} reset to pending')
            return
        else:
            result = await app.retry_failed(args.task_ids)
        print(f'Retried {result.retried_count} task(s): {result.retried_ids}')
        for skipped in result.skipped:
            print(f'  skipped {skipped.id}: {skipped.reason}')

    asyncio.run(_run_admin(discover_app(args.locator), op))


def clear_command(args: argparse.Namespace) -> None:
    async def op(app: Chronoqueue) -> None:
        result = await app.clear_tasks(
            include_completed=args.include_completed,
            include_failed=args.include_failed,
            older_than_days=args.older_than_days,
        )
        print(
            f'Deleted {result.deleted_count} task(s) '
            f'(completed: {result.breakdown.get("completed", 0)}, '
            f'failed: {result.breakdown.get("failed", 0)})'
        )

    asyncio.run(_run_admin(discover_app(args.locator), op))


def _add_common(parser: argparse.ArgumentParser, default_level: str) -> None:
    parser.add_argument(
        'locator',
        help='Chronoqueue instance locator (e.g., app.queue:app)',
    )
    parser.add_argument(
        '--loglevel',
        choices=LOG_LEVELS,
        default=default_level,
        type=str.upper,
        help=f'Logging level (default: {default_level})',
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='chronoqueue',
        description='Chronoqueue pipeline task queue - workers and administration',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  chronoqueue run app.queue:app
  chronoqueue stats app.queue:app
  chronoqueue list app.queue:app --status failed
  chronoqueue retry app.queue:app 42
  chronoqueue retry app.queue:app --all
  chronoqueue clear app.queue:app --no-completed --older-than-days 7
""",
    )
    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    run_parser = subparsers.add_parser('run', help='Start the worker pool')
    _add_common(run_parser, 'INFO')

    stats_parser = subparsers.add_parser('stats', help='Show task counts by status')
    _add_common(stats_parser, 'WARNING')

    list_parser = subparsers.add_parser('list', help='List tasks, newest first')
    _add_common(list_parser, 'WARNING')
    list_parser.add_argument(
        '--status', choices=[s.value for s in TaskStatus], default=None,
    )
    list_parser.add_argument('--type', choices=list(TASK_TYPES), default=None)
    list_parser.add_argument(
        '--limit', type=int, default=0, help='Show at most N tasks (default: all)',
    )

    retry_parser = subparsers.add_parser('retry', help='Reset failed tasks to pending')
    _add_common(retry_parser, 'WARNING')
    retry_parser.add_argument('task_ids', nargs='*', type=int, metavar='TASK_ID')
    retry_parser.add_argument(
        '--all', action='store_true', default=False, help='Retry every failed task',
    )

    clear_parser = subparsers.add_parser('clear', help='Delete completed/failed tasks')
    _add_common(clear_parser, 'WARNING')
    clear_parser.add_argument(
        '--no-completed', dest='include_completed', action='store_false', default=True,
    )
    clear_parser.add_argument(
        '--no-failed', dest='include_failed', action='store_false', default=True,
    )
    clear_parser.add_argument('--older-than-days', type=int, default=None)

    return parser


def _validate_args(args: argparse.Namespace) -> None:
    if args.command == 'retry' and bool(args.all) == bool(args.task_ids):
        raise ConfigurationError(
            message='retry needs either task ids or --all',
            code=ErrorCode.CLI_INVALID_ARGS,
            help_text=(
                'chronoqueue retry app.queue:app 42 43\n'
                'chronoqueue retry app.queue:app --all'
            ),
        )
    if args.command == 'clear':
        if not args.include_completed and not args.include_failed:
            raise ConfigurationError(
                message='--no-completed and --no-failed leave nothing to clear',
                code=ErrorCode.CLI_INVALID_ARGS,
            )
        if args.older_than_days is not None and args.older_than_days < 0:
            raise ConfigurationError(
                message='--older-than-days must be >= 0',
                code=ErrorCode.CLI_INVALID_ARGS,
                notes=[f'got {args.older_than_days}'],
            )


COMMANDS: dict[str, Callable[[argparse.Namespace], None]] = {
    'run': run_command,
    'stats': stats_command,
    'list': list_command,
    'retry': retry_command,
    'clear': clear_command,
}


def main(argv: Optional[Sequence[str]] = None) -> None:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    command = COMMANDS.get(args.command or '')
    if command is None:
        parser.print_help()
        sys.exit(1)

    try:
        _validate_args(args)
        setup_logging(args.loglevel)
        command(args)
    except ChronoqueueError as exc:
        print(exc.format_rust_style(), file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        print('\nInterrupted by user')
        sys.exit(0)


if __name__ == '__main__':
    main()
