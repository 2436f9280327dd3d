"""
Entry point for running the relay as a module.

Usage:
    python -m beastswap_relay serve
"""

from beastswap_relay.cli import main

if __name__ == "__main__":
    main()
