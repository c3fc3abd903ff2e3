"""Entry point for Drop Sync.

Usage:
    python -m drop_sync [start] [-c CONFIG]   Run the uploader in the foreground
    python -m drop_sync check [-c CONFIG]     Validate the configuration
"""

import sys


def main() -> None:
    """Delegate to the service CLI."""
    from drop_sync.service import main as service_main

    sys.exit(service_main())


if __name__ == "__main__":
    main()
