"""Identity from the upstream Identity Provider.

Tokens are issued and validated upstream; the edge proxy forwards the
verified identity as trusted headers (``X-User-Id``, ``X-User-Role``,
``X-User-Email``, ``X-User-Name``). This module turns those headers into a
``Principal`` for DRF and provides the admin permission check.
"""

import logging

from rest_framework.authentication import BaseAuthentication
from rest_framework.permissions import BasePermission

from apps.orders.domain import Principal

security_logger = logging.getLogger("orders.security")

ROLES = frozenset({"customer", "admin"})


class TrustedHeaderAuthentication(BaseAuthentication):
    """Authenticate requests from the identity headers set by the proxy.

    Returns None (anonymous) when ``X-User-Id`` is absent, so permission
    classes decide whether the endpoint needs an identity.
    """

    def authenticate(self, request):
        user_id = (request.META.get("HTTP_X_USER_ID") or "").strip()
        if not user_id:
            return None
        role = (request.META.get("HTTP_X_USER_ROLE") or "customer").strip().lower()
        if role not in ROLES:
            security_logger.warning("unknown role header", extra={"user_id": user_id, "role": role})
            role = "customer"
        principal = Principal(
            id=user_id[:64],
            role=role,
            email=(request.META.get("HTTP_X_USER_EMAIL") or "").strip(),
            name=(request.META.get("HTTP_X_USER_NAME") or "").strip(),
        )
        return principal, None

    def authenticate_header(self, request):
        # makes DRF answer 401 rather than 403 for anonymous callers
        return "X-User-Id"


class IsAdmin(BasePermission):
    """Allow only principals with the ``admin`` role."""

    def has_permission(self, request, view):
        user = request.user
        ok = bool(user and getattr(user, "is_admin", False))
        if not ok and user is not None:
            security_logger.info(
                "admin endpoint denied", extra={"user_id": getattr(user, "id", None), "path": request.path}
            )
        return ok
