"""Allow ``python -m sshlab``."""

import sys

from sshlab.cli import main

if __name__ == "__main__":
    sys.exit(main())
