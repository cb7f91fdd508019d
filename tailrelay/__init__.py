"""
tailrelay - A single-target forwarder into a Tailscale network

This package listens on one local address and relays every accepted
connection to one fixed target reachable through the tailnet, either as
a raw TCP tunnel or as an HTTP reverse proxy.
"""

__version__ = "0.1.0"
