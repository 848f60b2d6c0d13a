"""
Pydantic data models package.

Contains the user record schema and the API response envelopes.
"""

from .user import Page, UserRecord, UserResponse

__all__ = [
    "Page",
    "UserRecord",
    "UserResponse",
]
