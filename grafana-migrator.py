#!/usr/bin/env python3
"""
Grafana Migrator

Main entry point for migrating folders, dashboards and datasources from one
Grafana instance to another.
"""

import os
import sys

# Add the src directory to the Python path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), 'src'))

from grafana_migrator.cli import main


if __name__ == '__main__':
    sys.exit(main())
