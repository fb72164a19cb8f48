"""Run the tunnel supervisor CLI."""

import sys

from socks_tunnel.cli import main

if __name__ == "__main__":
    sys.exit(main())
