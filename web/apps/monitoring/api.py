import logging

from django.conf import settings
from django.db import connection
from django.db.utils import DatabaseError
from django.http import JsonResponse

from apps.orders import providers
from apps.orders.domain import InventoryUnavailable

logger = logging.getLogger("orders")


def health_view(_request):
    """Readiness probe: database, plus the inventory ledger when it is remote."""
    db_ok = False
    try:
        with connection.cursor() as cur:
            cur.execute("SELECT 1;")
        db_ok = True
    except DatabaseError:
        logger.warning("health: database unreachable")

    components = {"db": {"ok": db_ok}}
    ok = db_ok
    if getattr(settings, "USE_HTTP_ADAPTERS", False):
        try:
            providers.get_inventory().count_books()
            inventory_ok = True
        except InventoryUnavailable:
            inventory_ok = False
        components["inventory"] = {"ok": inventory_ok}
        ok = ok and inventory_ok

    return JsonResponse({"ok": ok, "components": components}, status=200 if ok else 503)
