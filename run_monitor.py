"""
run_monitor.py - Entry point for running herowatch from a source checkout.

Equivalent to the installed `herowatch` console script.
"""

import sys

# Add src to path for imports
sys.path.insert(0, 'src')


def main() -> int:
    from herowatch.main import main as cli_main

    return cli_main(sys.argv[1:])


if __name__ == "__main__":
    raise SystemExit(main())
