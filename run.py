"""
Entry point for Flask.

Usage (from project root):

    flask --app run.py init-db
    flask --app run.py seed-plans
    flask --app run.py create-admin --email admin@example.com
    flask --app run.py --debug run

Scheduled jobs (cron):

    flask --app run.py billing run
    flask --app run.py billing overdue
    flask --app run.py release-escrow
    flask --app run.py contract-alerts
    flask --app run.py remind quotes
    flask --app run.py remind overdue
"""

from cotiz import create_app

# WSGI application object; `flask run` and gunicorn look for `app`.
app = create_app()

if __name__ == "__main__":
    # For direct `python run.py` usage (dev only).
    app.run(debug=True)
