"""
Flask-Migrate / WSGI entry point.

Usage:
    flask --app wsgi db init       # first time only (creates migrations/)
    flask --app wsgi db migrate -m "description"
    flask --app wsgi db upgrade
    flask --app wsgi sync-all      # one-off sync of every active project
"""

from review_hub import create_app

app = create_app()
