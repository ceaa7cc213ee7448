from .routes import fs_bp

__all__ = ["fs_bp"]
