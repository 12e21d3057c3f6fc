"""
Generic REST access to database tables and views.

Keep imports here free of side effects such as opening the database.

Run with the application factory:

    python -m flask --app dbrest.main:create_app run
"""

__version__ = "1.0.0"

__all__ = ["__version__"]
