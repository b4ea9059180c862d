"""
CLI entry point for usbctl.

Allows running with: python -m usbctl
"""

import os
import sys


def main() -> int:
    """Main entry point for the usbctl CLI."""
    from .config_manager import get_config_manager
    from .main import run_server, setup_logging

    verbose = os.environ.get("USBCTL_VERBOSE", "").lower() in ("1", "true", "yes")
    setup_logging(verbose)

    config_manager = get_config_manager()
    config = config_manager.config
    verbose = verbose or config.verbose

    try:
        setup_logging(verbose, config.log_file)
    except OSError as e:
        print(f"Failed to initialise logging: {e}", file=sys.stderr)
        return 1

    try:
        port = int(os.environ.get("USBCTL_PORT", config.port))
        poll_interval = float(os.environ.get("USBCTL_POLL_INTERVAL", config.poll_interval))
    except ValueError as e:
        print(f"Invalid environment setting: {e}", file=sys.stderr)
        return 1
    host = os.environ.get("USBCTL_HOST", config.host)

    return run_server(
        host=host,
        port=port,
        config_manager=config_manager,
        poll_interval=poll_interval,
        verbose=verbose,
    )


if __name__ == "__main__":
    sys.exit(main())
