"""PingBuoy website monitoring: rate limiting service."""
