"""
FastAPI Todo Backend package.

Multi-user todo service: domain model, repositories, authentication, use cases
and the HTTP boundary. The ASGI application lives at `todo_backend.main:app`.
"""

__version__ = "0.2.0"
