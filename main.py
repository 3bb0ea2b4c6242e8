"""ScpBridge — entry point.

Equivalent to the ``scpbridge`` console script::

    python main.py --profile build01 push ./site /var/www/site -p
"""

from __future__ import annotations

import sys

from scpbridge.cli import main

if __name__ == "__main__":
    sys.exit(main())
