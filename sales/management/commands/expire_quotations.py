from django.core.management.base import BaseCommand

from sales.services import expire_quotations


class Command(BaseCommand):
    help = "Expire active quotations past their valid-until date and release their stock reservations."

    def handle(self, *args, **options):
        expired = expire_quotations()
        self.stdout.write(self.style.SUCCESS(f"Expired {expired} quotation(s)."))
