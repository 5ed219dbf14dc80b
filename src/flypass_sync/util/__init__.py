from .dates import parse_creation_date, parse_passage_date
from .deadline import Deadline, RunDeadlineExceeded
from .money import coerce_amount_cents, optional_amount_cents, cents_to_money_str
from .retry import RetryExhaustedError, RetryPolicy

__all__ = [
    "parse_creation_date",
    "parse_passage_date",
    "Deadline",
    "RunDeadlineExceeded",
    "coerce_amount_cents",
    "optional_amount_cents",
    "cents_to_money_str",
    "RetryExhaustedError",
    "RetryPolicy",
]
