# api/__init__.py
from classpay.api.server import Services, app, build_services

__all__ = [
    "Services",
    "app",
    "build_services",
]
