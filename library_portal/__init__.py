"""Library Portal - Core Application Package

This package contains the core application modules including:
- API endpoints (api.py)
- Library management logic (library.py)
- Borrow record assembly, repair and listing (records.py, repair.py, views.py)
- Role permissions (permissions.py)
- CLI interface (main.py)
- Data models (models.py)
- Table access layer (database.py)
- Backend and auth clients (services/)
"""

__version__ = "1.0.0"
