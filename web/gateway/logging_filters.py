"""Logging filters for enriching log records with request context."""

from logging import Filter, LogRecord

from .middleware import REQUEST_ID_CTX


class RequestIdFilter(Filter):
    """Attach ``request_id`` (and a ``service`` tag) to every log record.

    The request id comes from ``REQUEST_ID_CTX``; outside a request (the
    reconciliation command, startup) it is ``"-"`` so formatters can always
    reference ``%(request_id)s``.
    """

    def __init__(self, name: str = "", service: str = "bookstore-web"):
        super().__init__(name)
        self.service = service

    def filter(self, record: LogRecord) -> bool:
        record.request_id = REQUEST_ID_CTX.get()
        if not hasattr(record, "service"):
            record.service = self.service
        return True
