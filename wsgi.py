"""
WSGI / Flask-Migrate entry point.

Usage:
    flask --app wsgi db upgrade
    flask --app wsgi create-tenant "Smith & Co" smith-co
    gunicorn wsgi:app
"""

from auditflow import create_app

app = create_app()
