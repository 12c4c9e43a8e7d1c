"""
Module import utilities for the CLI.

- import_module_path(): import using a dotted module path (recommended)
- import_file_path(): import from a file path, adding its parent to sys.path
- setup_sys_path_from_cwd(): put cwd on sys.path when it is a project root

The caller controls sys.path and module naming; nothing here guesses.
"""

from __future__ import annotations

import hashlib
import importlib
import importlib.util
import os
import sys
from typing import Any

from chronoqueue.core.logging import get_logger

logger = get_logger('imports')


def find_project_root(start_dir: str) -> str | None:
    """
    Return start_dir if it contains pyproject.toml, setup.cfg or setup.py.

    Does not traverse up, so a parent monorepo root is never picked.
    """
    start_dir = os.path.abspath(start_dir)
    for marker in ('pyproject.toml', 'setup.cfg', 'setup.py'):
        if os.path.exists(os.path.join(start_dir, marker)):
            return start_dir
    return None


def setup_sys_path_from_cwd() -> str | None:
    """If cwd is a project root, add it to sys.path. Returns cwd when added."""
    cwd = os.getcwd()
    if find_project_root(cwd) and cwd not in sys.path:
        sys.path.insert(0, cwd)
        logger.debug(f'Added cwd to sys.path: {cwd}')
        return cwd
    return None


def import_module_path(module_path: str) -> Any:
    """Import a module by dotted path; raises ModuleNotFoundError."""
    return importlib.import_module(module_path)


def _synthetic_module_name(path: str) -> str:
    """Stable module name for a standalone file, derived from its realpath."""
    realpath = os.path.realpath(path)
    hash_prefix = hashlib.sha256(realpath.encode()).hexdigest()[:12]
    return f'chronoqueue_app_{hash_prefix}'


def import_file_path(file_path: str, module_name: str | None = None) -> Any:
    """
    Import a module from a file path.

    The file's directory is put on sys.path so its sibling imports resolve.
    A file that is already loaded (under any name) is returned as is.

    Raises:
        FileNotFoundError: If the file doesn't exist
        ImportError: If the module can't be loaded
    """
    file_path = os.path.realpath(file_path)

    if not os.path.exists(file_path):
        raise FileNotFoundError(f'Module file not found: {file_path}')

    for mod in list(sys.modules.values()):
        mod_file = getattr(mod, '__file__', None)
        if mod_file and os.path.realpath(mod_file) == file_path:
            return mod

    parent_dir = os.path.dirname(file_path)
    if parent_dir not in sys.path:
        sys.path.insert(0, parent_dir)

    if module_name is None:
        module_name = _synthetic_module_name(file_path)

    spec = importlib.util.spec_from_file_location(module_name, file_path)
    if spec is None or spec.loader is None:
        raise ImportError(f'Could not load module from path: {file_path}')

    mod = importlib.util.module_from_spec(spec)
    sys.modules[module_name] = mod
    spec.loader.exec_module(mod)
    return mod
