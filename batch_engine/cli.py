"""
Main CLI entry point for the batch engine

This module provides the main() function that is called by the
batch-engine command installed via pip.
"""
from batch_engine.interfaces.cli import main


if __name__ == "__main__":
    main()
