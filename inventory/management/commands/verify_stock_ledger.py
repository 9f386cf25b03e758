from django.core.management.base import BaseCommand, CommandError

from inventory.ledger import StockLedger
from inventory.models import StoreItemStock


class Command(BaseCommand):
    help = (
        "Replay every (item, store) stock ledger and report projections whose on-hand "
        "quantity or last running balance diverges from the replayed sum."
    )

    def add_arguments(self, parser):
        parser.add_argument("--store", dest="store_code", help="Only verify projections of this store code.")

    def handle(self, *args, **options):
        projections = StoreItemStock.objects.select_related("item", "store").order_by("store__code", "item__code")
        if options.get("store_code"):
            projections = projections.filter(store__code=options["store_code"])

        checked = projections.count()
        divergences = list(StockLedger().verify(projections))

        for divergence in divergences:
            self.stdout.write(
                self.style.WARNING(
                    f"item={divergence.item_id} store={divergence.store_id} "
                    f"on_hand={divergence.quantity_on_hand} replayed={divergence.replayed_quantity} "
                    f"last_running_balance={divergence.last_running_balance}"
                )
            )

        if divergences:
            raise CommandError(f"{len(divergences)} of {checked} stock projection(s) diverge from their ledger.")
        self.stdout.write(self.style.SUCCESS(f"Verified {checked} stock projection(s); no divergence."))
