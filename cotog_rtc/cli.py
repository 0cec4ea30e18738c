"""Unified CLI for cotog-rtc using Click."""

import asyncio
import logging
import sys
from typing import Optional

import click
from loguru import logger

from cotog_rtc.config import get_config


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@click.group()
def cli():
    pass


# =============================================================================
# Auth Commands
# =============================================================================


@cli.command()
@click.option("--token", "-t", prompt=True, hide_input=True, help="Bearer token issued for the relay.")
@click.option("--name", "-n", default=None, help="Display name to remember with the token.")
def login(token, name):
    """Store a relay token for future commands.

    The token is saved to ~/.cotog-rtc/credentials.json and used by
    'cotog-rtc join' when --token is omitted.

    Example:
        cotog-rtc login --token eyJ...
    """
    from cotog_rtc.auth.credentials import save_token

    token = token.strip()
    if not token:
        logger.error("Token cannot be empty")
        sys.exit(1)

    user = {"display_name": name} if name else None
    save_token(token, user)
    click.echo("Token saved")
    logger.info("Credentials saved to ~/.cotog-rtc/credentials.json")


@cli.command()
def logout():
    """Log out and clear stored credentials.

    Removes the token and all stored room passwords.
    """
    from cotog_rtc.auth.credentials import clear_credentials, is_logged_in

    if not is_logged_in():
        click.echo("Not currently logged in")
        return

    clear_credentials()
    click.echo("Logged out successfully")


# =============================================================================
# Relay
# =============================================================================


@cli.command()
@click.option("--host", default="localhost", help="Host to bind to (default: localhost).")
@click.option("--port", type=int, default=8080, help="Port to listen on (default: 8080).")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def relay(host, port, verbose):
    """Run the development relay.

    Rooms, passwords and tokens come from the [relay] section of
    cotog-rtc.toml.

    Examples:

        cotog-rtc relay

        cotog-rtc relay --host 0.0.0.0 --port 9000
    """
    from cotog_rtc.relay import RelayServer

    _configure_logging(verbose)
    config = get_config()
    relay_config = config.get_relay_config()
    if not relay_config.rooms:
        logger.warning("No rooms configured; every join will be rejected")

    server = RelayServer(relay_config, ice_servers=config.get_voice_settings().ice_servers)
    try:
        asyncio.run(server.serve(host, port))
    except KeyboardInterrupt:
        logger.info("Relay stopped by user")
    except OSError as e:
        logger.error(f"Relay error: {e}")
        sys.exit(1)


# =============================================================================
# Join
# =============================================================================


async def _run_session(
    room_id: str,
    credentials,
    url: Optional[str],
    voice: bool,
    message: Optional[str],
) -> int:
    from cotog_rtc.exceptions import ConnectError
    from cotog_rtc.session.manager import SessionConnectionManager
    from cotog_rtc.voice.controller import VoiceController
    from cotog_rtc.voice.permissions import PermissionStatus

    config = get_config()
    session = SessionConnectionManager(
        url=url or config.get_websocket_url(),
        timings=config.get_session_timings(),
    )
    ended = asyncio.get_running_loop().create_future()
    printed = set()
    present = set()

    @session.on("room_state_changed")
    def on_room_state(state):
        for msg in state.chat_log:
            if msg.message_id not in printed:
                printed.add(msg.message_id)
                click.echo(f"[{msg.display_name}] {msg.text}")
        ids = set(state.participant_ids())
        for participant_id in sorted(ids - present):
            click.echo(f"* {participant_id} is here")
        present.clear()
        present.update(ids)

    @session.on("reconnecting")
    def on_reconnecting(attempt, delay):
        click.echo(f"* Connection lost, retrying in {delay:.0f}s (attempt {attempt})")

    @session.on("fatal_error")
    def on_fatal(exc):
        click.echo(f"* Session lost: {exc}", err=True)

    @session.on("session_ended")
    def on_ended(reason):
        if not ended.done():
            ended.set_result(reason)

    try:
        await session.connect(room_id, credentials)
    except ConnectError as e:
        click.echo(f"Failed to join {room_id}: {e}", err=True)
        return 1
    click.echo(f"Joined {room_id} as {session.participant_id} ({session.role})")

    if voice:
        controller = VoiceController(session)
        if session.permissions.status() == PermissionStatus.GRANTED:
            await controller.enable_voice()
        else:
            click.echo("* Requesting audio permission")
            await session.permissions.request()

    if message:
        await session.send_chat(message)

    try:
        reason = await ended
    finally:
        await session.disconnect()
    return 0 if reason == "disconnect" else 1


@cli.command()
@click.argument("room_id")
@click.option("--password", "-p", default=None, help="Room password (default: stored password).")
@click.option("--token", "-t", default=None, help="Bearer token (default: stored token).")
@click.option("--server", "-s", default=None, help="Signaling WebSocket URL.")
@click.option("--voice", is_flag=True, help="Join the voice mesh once permitted.")
@click.option("--message", "-m", default=None, help="Chat message to send after joining.")
@click.option("--save-password", is_flag=True, help="Remember the room password.")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def join(room_id, password, token, server, voice, message, save_password, verbose):
    """Join a room and follow its chat and roster.

    Press Ctrl-C to leave.

    Examples:

        cotog-rtc join my-room --password letmein

        cotog-rtc join my-room --voice --message "hello"
    """
    from cotog_rtc.auth.credentials import (
        get_room_password,
        get_valid_token,
        save_room_password,
    )
    from cotog_rtc.session.manager import Credentials

    _configure_logging(verbose)

    token = token or get_valid_token()
    if not token:
        logger.error("No token. Run: cotog-rtc login")
        sys.exit(1)

    password = password or get_room_password(room_id)
    if password and save_password:
        save_room_password(room_id, password)

    credentials = Credentials(token=token, room_password=password)
    try:
        exit_code = asyncio.run(_run_session(room_id, credentials, server, voice, message))
    except KeyboardInterrupt:
        logger.info("Left room")
        exit_code = 0
    sys.exit(exit_code)


if __name__ == "__main__":
    cli()
