"""HTTP surface of the relayer."""

from velo.api.routes import create_app

__all__ = ["create_app"]
