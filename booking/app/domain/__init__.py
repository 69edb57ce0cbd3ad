"""Booking domain: ORM models, error taxonomy and caller identity."""
