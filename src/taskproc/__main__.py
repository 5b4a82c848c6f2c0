"""taskproc entry point.

Supports: python -m taskproc
"""

import sys

from .cli import main

if __name__ == "__main__":
    sys.exit(main())
