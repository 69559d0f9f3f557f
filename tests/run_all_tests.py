"""Simple unified test runner.

Usage:
  python tests/run_all_tests.py

Runs the whole tests/ directory through pytest so the invocation lives in one place.
"""
from __future__ import annotations

import sys
from pathlib import Path


def main() -> int:
    try:
        import pytest  # type: ignore
    except ImportError:
        print("pytest not installed. Please install with `pip install -e .[test]`.", file=sys.stderr)
        return 1

    repo_root = Path(__file__).resolve().parents[1]
    tests_dir = repo_root / 'tests'
    if str(repo_root) not in sys.path:
        sys.path.insert(0, str(repo_root))
    return pytest.main(['-q', str(tests_dir)])


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
