"""Allow ``python -m bhyve_machine``."""

import sys

from bhyve_machine.cli import main

sys.exit(main())
