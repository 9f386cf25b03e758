from decimal import Decimal

from django.contrib.auth import get_user_model
from django.core.management.base import BaseCommand

from core.models import Store
from inventory.documents import DocumentLine, DocumentType
from inventory.models import Item, OpeningStockEntry, Supplier
from inventory.policies import post_opening_stock
from inventory.pricing import TaxMethod
from sales.models import Customer


class Command(BaseCommand):
    help = "Seed demo stores, users, master data and opening stock for local development."

    def handle(self, *args, **options):
        User = get_user_model()

        main_store, _ = Store.objects.get_or_create(code="MAIN", defaults={"name": "Main Store", "is_active": True})
        branch_store, _ = Store.objects.get_or_create(code="BR01", defaults={"name": "Branch Store", "is_active": True})

        for username, role, password, extra in [
            ("admin", User.Role.ADMIN, "admin1234", {"is_staff": True, "is_superuser": True}),
            ("supervisor", User.Role.SUPERVISOR, "supervisor1234", {}),
            ("cashier", User.Role.CASHIER, "cashier1234", {}),
        ]:
            user, created = User.objects.get_or_create(
                username=username,
                defaults={"email": f"{username}@example.com", "role": role, "store": main_store, "is_active": True, **extra},
            )
            if created:
                user.set_password(password)
                user.save(update_fields=["password"])

        supplier, _ = Supplier.objects.get_or_create(code="SUP-001", defaults={"name": "Local Supplier"})
        Customer.objects.get_or_create(code="CUS-001", defaults={"name": "Demo Customer", "phone": "+201000000001"})

        cola, _ = Item.objects.get_or_create(
            code="ITM-COLA",
            defaults={
                "name": "Cola 330ml",
                "cost_price": Decimal("0.90"),
                "retail_price": Decimal("1.50"),
                "wholesale_price": Decimal("1.20"),
                "tax_method": TaxMethod.EXCLUSIVE,
                "tax_rate": Decimal("14.00"),
                "reorder_level": 20,
            },
        )
        chips, _ = Item.objects.get_or_create(
            code="ITM-CHIPS",
            defaults={
                "name": "Potato Chips",
                "cost_price": Decimal("1.10"),
                "retail_price": Decimal("2.00"),
                "wholesale_price": Decimal("1.70"),
                "tax_method": TaxMethod.INCLUSIVE,
                "tax_rate": Decimal("14.00"),
                "reorder_level": 10,
            },
        )

        if not OpeningStockEntry.objects.filter(store=main_store).exists():
            result = post_opening_stock(
                main_store,
                [
                    DocumentLine(DocumentType.OPENING_STOCK, cola.id, Decimal("120")),
                    DocumentLine(DocumentType.OPENING_STOCK, chips.id, Decimal("8")),
                ],
                supplier=supplier,
                notes="Demo opening stock",
            )
            self.stdout.write(f"Opening stock posted: {result.document.number}")

        self.stdout.write(self.style.SUCCESS("Demo data seeded successfully."))
        self.stdout.write("Credentials: admin/admin1234, supervisor/supervisor1234, cashier/cashier1234")
        self.stdout.write(f"Stores: {main_store.code}, {branch_store.code}")
