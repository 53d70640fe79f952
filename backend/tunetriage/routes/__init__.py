"""TuneTriage routes module - exports all route routers"""

from tunetriage.routes import liked_songs

__all__ = ["liked_songs"]
