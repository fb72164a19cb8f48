"""
socks-tunnel - A supervisor for a SOCKS5 proxy over an SSH dynamic forward.

Runs `ssh -N -D` in the background, restarts it with backoff when it dies,
keeps pid files for status/stop, and refuses to share the SOCKS port with a
foreign listener.
"""

__version__ = "0.1.0"
