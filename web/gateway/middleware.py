"""Request middleware for the bookstore API.

- ``RequestIdMiddleware`` assigns every request an identifier (the incoming
  ``X-Request-Id`` header or a new UUIDv4), stores it on the request and in
  the ``REQUEST_ID_CTX`` context variable read by the logging filter and the
  HTTP adapters, and echoes it in the ``X-Request-ID`` response header.
- ``ApiSizeLimitMiddleware`` rejects oversized API bodies with 413.
- ``RawBodyCaptureMiddleware`` keeps the byte-exact body of signed webhook
  requests.
"""

import contextvars
import os
import uuid

from django.conf import settings
from django.http import JsonResponse
from django.utils.deprecation import MiddlewareMixin

REQUEST_ID_CTX = contextvars.ContextVar("request_id", default="-")
MAX_API_BYTES = int(os.getenv("API_MAX_BYTES", str(1 * 1024 * 1024)))


class RequestIdMiddleware(MiddlewareMixin):
    """Set a per-request identifier and echo it on the response."""

    HEADER = "HTTP_X_REQUEST_ID"       # incoming header as found in request.META
    RESPONSE_HEADER = "X-Request-ID"

    def process_request(self, request):
        rid = request.META.get(self.HEADER) or str(uuid.uuid4())
        request.request_id = rid
        REQUEST_ID_CTX.set(rid)

    def process_response(self, request, response):
        # error handlers may run without the attribute set
        response[self.RESPONSE_HEADER] = getattr(request, "request_id", REQUEST_ID_CTX.get())
        return response


class ApiSizeLimitMiddleware(MiddlewareMixin):
    """Reject API requests whose declared body exceeds ``API_MAX_BYTES``."""

    def process_request(self, request):
        if request.path.startswith("/api/"):
            limit = getattr(settings, "API_MAX_BYTES", MAX_API_BYTES)
            clen = request.META.get("CONTENT_LENGTH")
            if clen and clen.isdigit() and int(clen) > limit:
                return JsonResponse({"detail": "PAYLOAD_TOO_LARGE"}, status=413)


class RawBodyCaptureMiddleware(MiddlewareMixin):
    """Keep the exact request bytes for signed webhook endpoints.

    Signature verification must run over the body exactly as received, so
    for the configured paths the raw bytes are read before any view or
    parser touches the stream and exposed as ``request.raw_body``.
    """

    PATHS = ("/api/payments/webhook/",)

    def process_request(self, request):
        if request.method == "POST" and request.path in self.PATHS:
            request.raw_body = request.body
