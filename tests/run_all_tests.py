"""Unified test runner.

Usage:
  python tests/run_all_tests.py [extra pytest args]

Puts the repository root on sys.path so 'smolbot' imports without installing, then
hands over to pytest.
"""
from __future__ import annotations

import sys
from pathlib import Path


def main(argv: list[str] | None = None) -> int:
    try:
        import pytest  # type: ignore
    except ImportError:
        print("pytest not installed. Please install with `pip install -e .[test]`.", file=sys.stderr)
        return 1

    repo_root = Path(__file__).resolve().parents[1]
    tests_dir = repo_root / 'tests'
    if str(repo_root) not in sys.path:
        sys.path.insert(0, str(repo_root))

    args = ['-q', str(tests_dir), *(argv if argv is not None else sys.argv[1:])]
    return pytest.main(args)


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
