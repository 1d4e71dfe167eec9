"""Expire stale unpaid orders and finish pending inventory settlement.

Meant to run every few minutes from cron or a Kubernetes CronJob::

    python manage.py reconcile_orders
"""

from django.core.management.base import BaseCommand

from apps.orders import providers


class Command(BaseCommand):
    help = "Expire PENDING_PAYMENT orders past their timeout and settle leftover reservations."

    def handle(self, *args, **options):
        report = providers.get_order_service().reconcile()
        self.stdout.write(
            f"expired={len(report.expired)} confirmed={len(report.confirmed)} "
            f"settled={len(report.settled)} skipped={len(report.skipped)}"
        )
