from django.core.management.base import BaseCommand, CommandError

from apps.payments.models import PaymentRecord
from apps.payments.notifier import CrossContextNotifier
from apps.payments.reconciliation import run_until_settled
from apps.payments.services import build_loop


class Command(BaseCommand):
    help = "Reconcile a payment reference in the foreground until it settles or times out."

    def add_arguments(self, parser):
        parser.add_argument("reference")

    def handle(self, *args, **options):
        reference = options["reference"]
        if not PaymentRecord.objects.filter(reference=reference).exists():
            raise CommandError(f"No payment record for {reference}")

        loop = build_loop(reference)
        try:
            state = run_until_settled(loop, notifier=CrossContextNotifier())
        except KeyboardInterrupt:
            loop.cancel()
            self.stdout.write(self.style.WARNING(f"{reference}: stopped, record left as is"))
            return

        summary = loop.describe()
        line = f"{reference}: {state.value} after {summary['attempt_count']} attempt(s)"
        if summary["transaction_id"]:
            line += f" (transaction {summary['transaction_id']})"
        style = self.style.SUCCESS if state.value == "success" else self.style.WARNING
        self.stdout.write(style(line))
        if loop.user_message:
            self.stdout.write(loop.user_message)
