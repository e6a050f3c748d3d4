"""Flask blueprints for the reader UI."""

from flask import current_app


def get_service():
    """The PrefetchService bound to the running app."""
    return current_app.extensions['pagewise']
