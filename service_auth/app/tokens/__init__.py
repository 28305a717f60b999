"""
Session credentials: short-lived access tokens and rotating refresh tokens.
"""

from .service import ACCESS_TOKEN_TTL, REFRESH_TOKEN_TTL, TokenPair, TokenService

__all__ = ["ACCESS_TOKEN_TTL", "REFRESH_TOKEN_TTL", "TokenPair", "TokenService"]
