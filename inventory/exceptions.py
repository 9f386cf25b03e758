"""Typed failures raised by the stock ledger, movement policies and quotation conversion.

Each error carries the offending values in ``context``; the shared DRF
exception handler renders it as the ``errors`` member of the response envelope.
"""

from rest_framework import exceptions, status

from common.utils import to_json_compatible


class StockEngineError(exceptions.APIException):
    status_code = status.HTTP_400_BAD_REQUEST
    default_code = "stock_error"
    default_detail = "Stock operation failed."

    def __init__(self, message=None, **context):
        self.message = message or str(self.default_detail)
        self.context = to_json_compatible(context) or None
        super().__init__(detail=self.message, code=self.default_code)

    def __str__(self):
        return self.message


class ValidationError(StockEngineError, exceptions.ValidationError):
    default_code = "validation_error"
    default_detail = "Invalid input."


class InsufficientStockError(StockEngineError):
    status_code = status.HTTP_409_CONFLICT
    default_code = "insufficient_stock"
    default_detail = "Insufficient stock."


class CrossStoreError(StockEngineError):
    default_code = "cross_store"
    default_detail = "Source and destination store must differ."


class AlreadyConvertedError(StockEngineError):
    status_code = status.HTTP_409_CONFLICT
    default_code = "already_converted"
    default_detail = "Quotation is not active."


class ExpiredError(StockEngineError):
    default_code = "quotation_expired"
    default_detail = "Quotation has expired."


class ConcurrencyConflictError(StockEngineError):
    status_code = status.HTTP_409_CONFLICT
    default_code = "concurrency_conflict"
    default_detail = "Stock changed concurrently; retry the operation."


class DocumentStateError(StockEngineError):
    status_code = status.HTTP_409_CONFLICT
    default_code = "invalid_document_state"
    default_detail = "Document is not in a state that allows this operation."
