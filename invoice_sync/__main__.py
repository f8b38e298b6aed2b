"""
Main entry point for running invoice_sync as a module.

Usage:
    python -m invoice_sync <command> [options]
"""
import sys

from .cli import main

if __name__ == "__main__":
    sys.exit(main())
