from .routes import shares_bp

__all__ = ["shares_bp"]
