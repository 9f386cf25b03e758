from collections import OrderedDict

from rest_framework.pagination import PageNumberPagination
from rest_framework.response import Response


class StandardResultsSetPagination(PageNumberPagination):
    """Page-number pagination for documents, master data and audit logs.

    `?page_size=` is honoured up to `max_page_size`.
    """

    page_size_query_param = "page_size"
    max_page_size = 200


class StockHistoryPagination(StandardResultsSetPagination):
    """Movement history pages also carry the balance after the last row shown."""

    max_page_size = 500

    def get_paginated_response(self, data):
        closing_balance = data[-1]["running_balance"] if data else None
        return Response(
            OrderedDict(
                [
                    ("count", self.page.paginator.count),
                    ("next", self.get_next_link()),
                    ("previous", self.get_previous_link()),
                    ("closing_balance", closing_balance),
                    ("results", data),
                ]
            )
        )
