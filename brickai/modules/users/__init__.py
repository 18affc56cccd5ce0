"""
Users Module

Subject records keyed by the Sign in with Apple user id: stored provider
refresh token, last-known email and usage credits.
"""

from brickai.modules.users.models import User

__all__ = ["User"]
