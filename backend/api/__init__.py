# api/__init__.py
from api.server import create_app, get_services

__all__ = [
    "create_app",
    "get_services",
]
