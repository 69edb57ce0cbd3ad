"""Service layer: scheduling rules, blocking store and booking lifecycle."""
