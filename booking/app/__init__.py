"""Booking engine application package.

Exposes the database helpers and ORM models as the two entry points every
other layer builds on.
"""

from .core import db
from .domain import models

__all__ = ["db", "models"]
