from django.core.management.base import BaseCommand

from progress.services import workflows


class Command(BaseCommand):
    help = "Create or refresh the default inspection workflows of construction phases."

    def handle(self, *args, **options):
        created, updated = workflows.seed_default_workflows()
        self.stdout.write(
            self.style.SUCCESS(f"Seeded workflows: {created} created, {updated} updated.")
        )
