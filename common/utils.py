import datetime
import decimal
import uuid

MONEY_QUANT = decimal.Decimal("0.01")
QUANTITY_QUANT = decimal.Decimal("0.001")


def to_money(value):
    return decimal.Decimal(value).quantize(MONEY_QUANT, rounding=decimal.ROUND_HALF_UP)


def to_quantity(value):
    return decimal.Decimal(value).quantize(QUANTITY_QUANT, rounding=decimal.ROUND_HALF_UP)


def to_json_compatible(value):
    if isinstance(value, dict):
        return {key: to_json_compatible(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [to_json_compatible(item) for item in value]
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, decimal.Decimal):
        return str(value)
    if isinstance(value, (datetime.date, datetime.datetime, datetime.time)):
        return value.isoformat()
    return value
