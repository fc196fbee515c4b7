"""
WSGI / Flask-Migrate entry point.

Usage:
    gunicorn wsgi:app
    flask --app wsgi db upgrade
    flask --app wsgi dispatch-stage-ready 12 13 --source-stage cost
"""

from budgetflow import create_app

app = create_app()
