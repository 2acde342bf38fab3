"""Per-request routing over the preloaded content store."""

from __future__ import annotations

import logging

from config import INDEX_FALLBACKS
from content_store import ContentStore
from redirect import RedirectAuthorityError, build_https_redirect
from request import HTTPRequest
from response import HTTPResponse
from utils import resolve_cache_key

logger = logging.getLogger(__name__)


class Router:
    """Maps a request to a response using only in-memory state."""

    def __init__(
        self,
        store: ContentStore,
        *,
        redirect_http: bool = False,
        index_fallback: str = "any",
    ) -> None:
        if index_fallback not in INDEX_FALLBACKS:
            raise ValueError(f"Unsupported index fallback: {index_fallback}")
        self.store = store
        self.redirect_http = redirect_http
        self.index_fallback = index_fallback

    def handle(self, request: HTTPRequest) -> HTTPResponse:
        if request.method != "GET":
            return HTTPResponse(status_code=405, headers={"Allow": "GET"})

        if self.redirect_http:
            try:
                location = build_https_redirect(request)
            except RedirectAuthorityError as exc:
                logger.warning("Rejecting redirect request: %s", exc)
                return HTTPResponse(status_code=400)
            if location is not None:
                return HTTPResponse(status_code=301, headers={"Location": location})

        key = resolve_cache_key(request.path, self.store, self.index_fallback)
        if key is None:
            return HTTPResponse(status_code=404)
        return HTTPResponse(status_code=200, body=self.store[key])
