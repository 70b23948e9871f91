"""
Allow running M-Stack as a module: ``python -m mstack``.

Delegates to the CLI entry point so that ``mstack`` (console script)
and ``python -m mstack`` behave identically.
"""

from mstack.cli import main

if __name__ == "__main__":
    main()
