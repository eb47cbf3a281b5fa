"""Bookshelf - Core Application Package

This package contains the core application modules including:
- API endpoints (api.py)
- Library store and search history (library.py, search_history.py)
- CLI interface (main.py)
- Data models (entry.py)
- Database layer (database.py)
- Error types (errors.py)
"""

__version__ = "1.0.0"
