# client/identity.py
# Client identity generation and shareable invitation links.

import secrets
from urllib.parse import parse_qs, urlencode, urlsplit, urlunsplit

from common.protocol import IDENTITY_ALPHABET, IDENTITY_LENGTH, is_valid_identity

# Query parameter carrying the inviter's identity.
INVITE_PARAM = "code"


def generate_identity():
    """Returns a fresh random identity, e.g. 'Q7K2M9ZT4A'."""
    return "".join(secrets.choice(IDENTITY_ALPHABET) for _ in range(IDENTITY_LENGTH))


def build_invite_link(base_url, identity):
    """
    Builds a link that pre-fills `identity` as the target on the receiving side.
    Any query string already on `base_url` is kept.
    """
    parts = urlsplit(base_url)
    query = parse_qs(parts.query)
    query[INVITE_PARAM] = [identity]
    return urlunsplit(parts._replace(query=urlencode(query, doseq=True)))


def parse_invite_link(url):
    """
    Extracts the inviter identity from an invitation link.

    Returns:
        str | None: The identity, or None if the link has no well-formed 'code' parameter.
    """
    values = parse_qs(urlsplit(url).query).get(INVITE_PARAM)
    if not values:
        return None
    candidate = values[0].strip()
    return candidate if is_valid_identity(candidate) else None
