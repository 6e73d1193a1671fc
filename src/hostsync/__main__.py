"""Allow ``python -m hostsync``."""
import sys

from .cli import main

sys.exit(main())
