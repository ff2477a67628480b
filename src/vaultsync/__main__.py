"""Main entry point for the vaultsync package."""

from vaultsync.cli import main

if __name__ == "__main__":
    main()
