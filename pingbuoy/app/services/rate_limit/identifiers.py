"""Identifier and backend key composition.

Identifiers are ``<scope>:<value>`` strings; backend keys are
``<prefix>[:<service>]:<identifier>``. The same inputs always compose to
the same key, which is what lets repeated checks share one window.
"""

from typing import Optional

from pingbuoy.app.exceptions import RateLimitConfigError

IP_SCOPE = "ip"
USER_SCOPE = "user"
RECIPIENT_SCOPE = "recipient"
SENDER_SCOPE = "sender"
BLOCKED_SCOPE = "blocked"


def scoped(scope: str, value: str) -> str:
    if not value:
        raise RateLimitConfigError(f"{scope} identifier value must not be empty")
    return f"{scope}:{value}"


def ip_identifier(ip: str) -> str:
    return scoped(IP_SCOPE, ip)


def user_identifier(user_id: str) -> str:
    return scoped(USER_SCOPE, str(user_id))


def recipient_identifier(email: str) -> str:
    # Addresses differing only in case are one recipient
    return scoped(RECIPIENT_SCOPE, email.strip().lower())


def sender_identifier(sender: str) -> str:
    return scoped(SENDER_SCOPE, sender.strip().lower())


def blocked_identifier(identifier: str) -> str:
    return scoped(BLOCKED_SCOPE, identifier)


def build_key(prefix: str, identifier: str, service: Optional[str] = None) -> str:
    """Compose the backend key for an identifier.

    Args:
        prefix: Key namespace, e.g. ``ratelimit``
        identifier: Scoped identifier such as ``ip:203.0.113.7``
        service: Optional service class label

    Raises:
        RateLimitConfigError: If the identifier is empty
    """
    if not identifier or not isinstance(identifier, str):
        raise RateLimitConfigError("identifier must be a non-empty string")
    parts = [prefix]
    if service:
        parts.append(service)
    parts.append(identifier)
    return ":".join(parts)
