from django.db import transaction
from django.db.models import F

from inventory.models import DocumentSequence


def next_document_number(store, prefix):
    """Issue ``<STORE_CODE>-<PREFIX>-<NNNNNN>``, sequential per store and prefix."""
    with transaction.atomic():
        sequence, _ = DocumentSequence.objects.select_for_update().get_or_create(store=store, prefix=prefix)
        DocumentSequence.objects.filter(pk=sequence.pk).update(last_value=F("last_value") + 1)
        sequence.refresh_from_db(fields=["last_value"])
    return f"{store.code}-{prefix}-{sequence.last_value:06d}"
