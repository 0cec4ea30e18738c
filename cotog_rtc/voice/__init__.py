"""Voice: audio permission workflow, media and the peer connection mesh."""
