"""HTTP to HTTPS redirect decisions for requests arriving through a TLS proxy."""

from __future__ import annotations

import logging
import re
from urllib.parse import urlunsplit

from config import FORWARDED_PROTO_HEADER
from request import HTTPRequest

logger = logging.getLogger(__name__)

# host / IPv4 / [IPv6] with an optional port; userinfo is not accepted.
AUTHORITY_PATTERN = re.compile(r"^[A-Za-z0-9\-._~%!$&'()*+,;=:\[\]]+$")


class RedirectAuthorityError(ValueError):
    """Raised when a redirect is due but no usable host is known."""


def build_https_redirect(request: HTTPRequest) -> str | None:
    """Return the HTTPS location for a proxied plain-HTTP request.

    Only a forwarded-protocol header equal to ``http`` triggers a redirect.
    The authority is taken from the Host header, falling back to the
    authority of an absolute-form request target.
    """
    forwarded_proto = request.headers.get(FORWARDED_PROTO_HEADER)
    if forwarded_proto != "http":
        return None

    authority = request.headers.get("host") or request.authority
    if not authority or not AUTHORITY_PATTERN.match(authority):
        raise RedirectAuthorityError(f"Cannot determine redirect authority from {authority!r}")
    if not request.path.startswith("/"):
        raise RedirectAuthorityError(f"Cannot redirect request target {request.raw_target!r}")

    location = urlunsplit(("https", authority, request.path, request.query_string, ""))
    logger.info("Redirecting to https for %s", request.raw_target)
    return location
