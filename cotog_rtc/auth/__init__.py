"""Authentication module for cotog-rtc.

This module provides:
- credentials: Load/save the bearer token and room passwords from
  ~/.cotog-rtc/credentials.json
"""

from cotog_rtc.auth.credentials import (
    get_credentials,
    save_credentials,
    clear_credentials,
    get_token,
    get_valid_token,
    get_user,
    save_token,
    is_logged_in,
    get_room_password,
    save_room_password,
    remove_room_password,
    CREDENTIALS_PATH,
)

__all__ = [
    "get_credentials",
    "save_credentials",
    "clear_credentials",
    "get_token",
    "get_valid_token",
    "get_user",
    "save_token",
    "is_logged_in",
    "get_room_password",
    "save_room_password",
    "remove_room_password",
    "CREDENTIALS_PATH",
]
