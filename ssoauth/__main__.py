"""Run the ssoauth CLI with ``python -m ssoauth``."""

import sys

from .cli import main


sys.exit(main())
