"""
WSGI / Flask CLI entry point.

Usage:
    flask --app wsgi db upgrade        # apply migrations
    flask --app wsgi sla-scan          # run one breach scan
    flask --app wsgi run-scheduler     # run interval jobs in the foreground
"""

from workflow_engine import create_app

app = create_app()
