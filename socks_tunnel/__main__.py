"""
Entry point for running the tunnel supervisor via `python -m socks_tunnel`.

The detached run loop is started this way too.
"""

import sys

from .cli import main

if __name__ == "__main__":
    sys.exit(main())
