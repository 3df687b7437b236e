"""HTTP layer: request routing, upstream chat client, rate limiting and uploads.

Build an application with :func:`mascot_backend.server.app.create_app`.
"""

__all__ = []
