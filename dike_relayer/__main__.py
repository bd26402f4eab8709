"""
Entry point for running the relayer as a module.

Usage:
    python -m dike_relayer
"""

from dike_relayer.cli import main

if __name__ == "__main__":
    main()
