"""
Tests for the Smart Bulk Copy Plugin Modules

No live database is needed: ODBC and psycopg2 connections are mocked and
the orchestrator runs against in-memory backends.
"""

import os
import sys

# Add plugins directory to Python path (Airflow does this automatically at runtime)
plugins_dir = os.path.abspath(os.path.join(os.path.dirname(__file__), '..', '..', 'plugins'))
if plugins_dir not in sys.path:
    sys.path.insert(0, plugins_dir)
