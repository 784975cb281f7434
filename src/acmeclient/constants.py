"""ACME client constants."""
from typing import Any
from typing import Dict

from acmeclient import challenges

USER_AGENT = 'acmeclient-python'
"""Default ``User-Agent`` header sent with every request."""

DEFAULT_NETWORK_TIMEOUT = 45
"""Timeout, in seconds, of a single HTTP request."""

DEFAULT_KEY_SIZE = 2048
"""Size of the RSA keys generated for certificates."""

SESSION_DEFAULTS: Dict[str, Any] = dict(  # noqa
    key_size=DEFAULT_KEY_SIZE,
    http01_port=challenges.HTTP01Response.PORT,
    http01_address="",
    pref_challs=[challenges.HTTP01.typ],
    verify_ssl=True,
    user_agent=USER_AGENT,
    network_timeout=DEFAULT_NETWORK_TIMEOUT,
)
"""Defaults for `acmeclient.session.Session` keyword arguments."""

CHALLENGE_POLL_INTERVAL = 1
"""Seconds between two polls of a challenge."""

CHALLENGE_POLL_MAX_ATTEMPTS = 30
"""Maximum number of polls of a challenge before giving up."""

CERTIFICATE_POLL_MINTIME = 5
"""Seconds between two polls of a certificate, unless ``Retry-After`` says otherwise."""

CERTIFICATE_POLL_MAX_ATTEMPTS = 10
"""Maximum number of polls of a certificate before giving up."""

MAX_WORKERS = 10
"""Maximum number of domains authorized concurrently."""

DER_CONTENT_TYPE = 'application/pkix-cert'
"""Content type of certificates returned by the authority."""

NONCE_HISTORY = 1024
"""Number of consumed nonces remembered to refuse their reuse."""
