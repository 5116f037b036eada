"""Services package for PingBuoy.

This package provides:
- Sliding window rate limiting over Redis with IP and user scopes
"""
