from django.core.management.base import BaseCommand, CommandError

from billing.models import WebhookEvent
from billing.services.webhook_service import enqueue, pending_events, process_event


class Command(BaseCommand):
    help = "Reprocess stored payment webhooks that were never processed or that failed."

    def add_arguments(self, parser):
        parser.add_argument("--id", type=int, help="Replay a single event by id, whatever its status.")
        parser.add_argument("--received-only", action="store_true", help="Skip events in failed status.")
        parser.add_argument(
            "--queue",
            action="store_true",
            help="Hand events to the Celery worker instead of processing them in this process.",
        )

    def handle(self, *args, **options):
        if options.get("id"):
            events = WebhookEvent.objects.filter(pk=options["id"])
            if not events.exists():
                raise CommandError(f"Webhook event {options['id']} not found.")
            # Allow an explicit replay of an ignored event
            events.update(status=WebhookEvent.Status.RECEIVED)
        else:
            events = pending_events(include_failed=not options.get("received_only"))

        event_ids = list(events.values_list("id", flat=True))
        self.stdout.write(f"Replaying {len(event_ids)} webhook event(s)...")
        results = {}
        for event_id in event_ids:
            if options.get("queue"):
                status = "queued" if enqueue(event_id) else "enqueue_failed"
            else:
                try:
                    status = process_event(event_id)
                except Exception as e:
                    # process_event already marked it failed; keep going with the rest
                    status = "error"
                    self.stderr.write(f"  event {event_id}: {type(e).__name__}: {e}")
            results[status] = results.get(status, 0) + 1
            self.stdout.write(f"  event {event_id}: {status}")

        summary = ", ".join(f"{k}={v}" for k, v in sorted(results.items())) or "nothing to do"
        self.stdout.write(self.style.SUCCESS(f"Done: {summary}"))
