"""
WSGI / Flask-Migrate entry point.

Usage:
    flask --app wsgi db upgrade
    flask --app wsgi db migrate -m "description"
"""

from app import create_app

app = create_app()
