"""Allow running selfupdate with ``python -m selfupdate``."""

import sys

from selfupdate.cli import main

if __name__ == "__main__":
    sys.exit(main())
