"""fleetqa CLI entry point.

This module enables running fleetqa as:
    python -m fleetqa <command>
"""

from fleetqa.cli import main

if __name__ == "__main__":
    main()
