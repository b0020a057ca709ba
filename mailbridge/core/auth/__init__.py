"""OAuth token handling for remote-api accounts."""
from .token_refresher import TokenRefresher

__all__ = ['TokenRefresher']
