"""Bookshelf - Utilities

- Identifier and text validators (validators.py)
- CLI output helpers (ui_helpers.py)
"""
