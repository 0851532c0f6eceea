from django.core.management.base import BaseCommand, CommandError

from progress.models import PhaseItem
from progress.services import quantities


class Command(BaseCommand):
    help = "Recompute the formula quantities stored for phase item inputs."

    def add_arguments(self, parser):
        parser.add_argument(
            "--item",
            action="append",
            type=int,
            dest="items",
            help="Phase item id to recompute (repeatable). Defaults to every item with a formula.",
        )

    def handle(self, *args, **options):
        items = PhaseItem.objects.filter(formula__isnull=False).order_by("id")
        if options.get("items"):
            requested = set(options["items"])
            items = PhaseItem.objects.filter(pk__in=requested).order_by("id")
            missing = requested - set(items.values_list("pk", flat=True))
            if missing:
                raise CommandError(f"Unknown phase item id(s): {', '.join(str(pk) for pk in sorted(missing))}")

        total_rows = total_failed = 0
        for item in items:
            manifest = quantities.recompute_phase_item_inputs(item)
            total_rows += len(manifest.outcomes)
            total_failed += len(manifest.failed)
            self.stdout.write(
                f"{item.pk} {item.name}: {manifest.updated_count} updated, "
                f"{len(manifest.evaluation_errors)} evaluation error(s), {len(manifest.failed)} write failure(s)."
            )
            for outcome in manifest.failed:
                self.stderr.write(f"  input {outcome.input_id}: {outcome.write_error}")

        message = f"Recomputed {total_rows} input row(s); {total_failed} failed."
        if total_failed:
            self.stdout.write(self.style.WARNING(message))
        else:
            self.stdout.write(self.style.SUCCESS(message))
