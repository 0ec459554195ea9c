#!/usr/bin/env python3
"""
Mbmigrate - Main entry point for the application.

This script serves as the entry point for the Mbmigrate application, which
migrates users and watch history between Emby and Jellyfin servers. It lists
the configured servers and then hands over to the interactive menu.
"""

import sys
from src.mbmigrate_cli import CliInterface
from src.mbmigrate_logging import logger

def main():
    """
    Main function that serves as the entry point for the application.

    Loads the configured servers, displays them and runs the interactive
    menu. Returns an exit code that can be used by the system to determine
    if the application executed successfully.

    Returns:
        int: Exit code (0 for success, 1 for error)
    """
    logger.info("Starting Mbmigrate application...")

    try:
        cli = CliInterface()

        server_count = len(cli.manager.servers)
        logger.info(f"Found {server_count} configured media servers")
        for name, config in cli.manager.servers.items():
            logger.info(f"  - {name} ({config['type']})")

        cli.run()
    except (KeyboardInterrupt, EOFError):
        logger.info("Interrupted, exiting.")
        return 1

    return 0

if __name__ == "__main__":
    sys.exit(main())
