"""Room session: signaling channel, connection lifecycle and room state."""
