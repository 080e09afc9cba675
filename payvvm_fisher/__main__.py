"""
Entry point for running the fisher as a module.

Usage:
    python -m payvvm_fisher
"""

from payvvm_fisher.cli import main

if __name__ == "__main__":
    main()
