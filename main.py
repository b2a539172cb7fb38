#!/usr/bin/env python3
"""
SensorTag Report - Main Entry Point

Connects to TI SensorTags over Bluetooth Low Energy, configures their
sensors and forwards every reading to InfluxDB.

Usage:
    python main.py --help                 # Show help
    python main.py run                    # Run the reporter until SIGTERM/SIGINT
    python main.py discover               # List SensorTags in range
    python main.py status                 # Show configuration and database status

Environment Setup:
    Settings are read from the environment, optionally from a .env file:
    cp .env.sample .env
    # Edit .env with your InfluxDB credentials

Exit codes:
    1 - configuration error (e.g. DB_USER or DB_PASS missing)
    2 - database could not be created
"""

import sys

from sensortag_report.cli.menu import cli


def check_environment():
    """Check if the interpreter is supported."""
    issues = []

    if sys.version_info < (3, 8):
        issues.append(f"Python 3.8+ required, found {sys.version_info.major}.{sys.version_info.minor}")

    return issues


def main():
    """Main entry point with environment validation."""
    issues = check_environment()
    if issues:
        print("Environment Issues Found:")
        for issue in issues:
            print(f"   - {issue}")
        sys.exit(1)

    try:
        cli()
    except KeyboardInterrupt:
        print("\nInterrupted by user")
        sys.exit(0)


if __name__ == "__main__":
    main()
