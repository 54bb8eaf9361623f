import time
from django.core.management.base import BaseCommand
from payments.provisioning import retry_sync_pending


class Command(BaseCommand):
    help = "Retry provisioning for SYNC_PENDING orders whose backoff has elapsed"

    def add_arguments(self, parser):
        parser.add_argument("--max", type=int, default=50, help="Max orders per sweep")
        parser.add_argument("--loop", action="store_true", help="Keep sweeping until interrupted")
        parser.add_argument("--sleep", type=float, default=30.0, help="Seconds between sweeps with --loop")

    def handle(self, *args, **opts):
        while True:
            report = retry_sync_pending(limit=opts["max"])
            if report.parked:
                self.stdout.write(self.style.WARNING(f"Parked {report.parked} interrupted VALIDATED orders."))
            if not report.checked:
                self.stdout.write(self.style.SUCCESS("No orders due for provisioning."))
            else:
                self.stdout.write(self.style.SUCCESS(
                    f"Checked {report.checked}: {report.succeeded} succeeded, "
                    f"{report.rescheduled} rescheduled, {report.escalated} escalated, {report.skipped} skipped."
                ))
            if not opts["loop"]:
                return
            time.sleep(opts["sleep"])
