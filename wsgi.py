"""
WSGI entry point for the ITP tracker API.

Usage:
    gunicorn wsgi:app               # production (APP_ENV=production)
    flask --app wsgi db upgrade     # apply migrations/
    python wsgi.py                  # local development server
"""

import os

from itp_tracker import create_app

app = create_app()

if __name__ == "__main__":
    app.run(host=os.getenv("ITP_HOST", "127.0.0.1"), port=int(os.getenv("ITP_PORT", "5000")))
