"""Credential file management for cotog-rtc.

Stores credentials in ~/.cotog-rtc/credentials.json with the schema:
{
    "token": "eyJ...",
    "user": {
        "id": "alice",
        "display_name": "Alice"
    },
    "room_passwords": {
        "<room_id>": "hunter2"
    }
}

Tokens are issued elsewhere; this module only keeps them between CLI runs.
"""

import json
import os
import stat
import time
from pathlib import Path
from typing import Any, Optional

import jwt
from loguru import logger

# Credentials file location
CREDENTIALS_DIR = Path.home() / ".cotog-rtc"
CREDENTIALS_PATH = CREDENTIALS_DIR / "credentials.json"


def _ensure_credentials_dir() -> None:
    """Ensure the credentials directory exists with proper permissions."""
    if not CREDENTIALS_DIR.exists():
        CREDENTIALS_DIR.mkdir(parents=True, mode=0o700)
        logger.debug(f"Created credentials directory: {CREDENTIALS_DIR}")


def get_credentials() -> dict[str, Any]:
    """Load credentials from file.

    Returns:
        Credentials dictionary, or empty dict if file doesn't exist.
    """
    if not CREDENTIALS_PATH.exists():
        return {}

    try:
        with open(CREDENTIALS_PATH) as f:
            return json.load(f)
    except (json.JSONDecodeError, IOError) as e:
        logger.warning(f"Failed to load credentials: {e}")
        return {}


def save_credentials(credentials: dict[str, Any]) -> None:
    """Save credentials to file with restrictive permissions.

    Args:
        credentials: Credentials dictionary to save.
    """
    _ensure_credentials_dir()

    # Write to temp file first, then rename (atomic)
    temp_path = CREDENTIALS_PATH.with_suffix(".tmp")

    try:
        with open(temp_path, "w") as f:
            json.dump(credentials, f, indent=2)

        os.chmod(temp_path, stat.S_IRUSR | stat.S_IWUSR)

        temp_path.rename(CREDENTIALS_PATH)
        logger.debug(f"Saved credentials to {CREDENTIALS_PATH}")

    except IOError as e:
        logger.error(f"Failed to save credentials: {e}")
        if temp_path.exists():
            temp_path.unlink()
        raise


def clear_credentials() -> None:
    """Remove the credentials file."""
    if CREDENTIALS_PATH.exists():
        CREDENTIALS_PATH.unlink()
        logger.info("Credentials cleared")
    else:
        logger.debug("No credentials to clear")


def get_token() -> Optional[str]:
    """Get the stored bearer token.

    Returns:
        Token string if stored, None otherwise.
    """
    return get_credentials().get("token")


def get_user() -> Optional[dict[str, Any]]:
    """Get the stored user info.

    Returns:
        User dictionary if stored, None otherwise.
    """
    return get_credentials().get("user")


def save_token(token: str, user: Optional[dict[str, Any]] = None) -> None:
    """Save the bearer token and optional user info.

    Args:
        token: Bearer token presented to the relay.
        user: User info dictionary.
    """
    creds = get_credentials()
    creds["token"] = token
    if user is not None:
        creds["user"] = user
    save_credentials(creds)


def is_logged_in() -> bool:
    """Check if a token is stored.

    Returns:
        True if a token exists in credentials.
    """
    return get_token() is not None


def get_valid_token() -> Optional[str]:
    """Get the stored token unless it is a JWT whose ``exp`` has passed.

    Opaque (non-JWT) tokens are returned as-is.

    Returns:
        Token string if stored and not expired, None otherwise.
    """
    token = get_token()
    if not token:
        return None

    try:
        # Decode without verification just to read the expiration claim
        claims = jwt.decode(token, options={"verify_signature": False})
    except jwt.DecodeError:
        return token

    exp = claims.get("exp")
    if exp and time.time() >= exp:
        logger.warning("Stored token has expired")
        return None
    return token


def get_room_password(room_id: str) -> Optional[str]:
    """Get the stored password for a room.

    Args:
        room_id: The room ID to look up.

    Returns:
        Password string if stored, None otherwise.
    """
    return get_credentials().get("room_passwords", {}).get(room_id)


def save_room_password(room_id: str, password: str) -> None:
    """Save a room password.

    Args:
        room_id: Room ID the password is for.
        password: Room password.
    """
    creds = get_credentials()
    if "room_passwords" not in creds:
        creds["room_passwords"] = {}

    creds["room_passwords"][room_id] = password
    save_credentials(creds)
    logger.debug(f"Saved password for room {room_id}")


def remove_room_password(room_id: str) -> bool:
    """Remove a stored room password.

    Args:
        room_id: Room ID to remove the password for.

    Returns:
        True if the password was removed, False if not found.
    """
    creds = get_credentials()
    passwords = creds.get("room_passwords", {})

    if room_id in passwords:
        del passwords[room_id]
        creds["room_passwords"] = passwords
        save_credentials(creds)
        logger.debug(f"Removed password for room {room_id}")
        return True
    return False
