"""Real-time delivery and room-presence core."""
