import logging

from django.db import transaction

from .exceptions import TransactionConflictError

logger = logging.getLogger(__name__)

MAX_TRANSACTION_ATTEMPTS = 3


def run_in_transaction(operation, *args, **kwargs):
    """
    Run ``operation`` inside its own atomic block.

    A ``TransactionConflictError`` rolls the block back and the whole step is
    attempted again, up to ``MAX_TRANSACTION_ATTEMPTS`` times in total. Any
    other error propagates on the first occurrence.
    """
    for attempt in range(1, MAX_TRANSACTION_ATTEMPTS + 1):
        try:
            with transaction.atomic():
                return operation(*args, **kwargs)
        except TransactionConflictError:
            if attempt == MAX_TRANSACTION_ATTEMPTS:
                logger.warning(
                    "%s still conflicting after %s attempts",
                    getattr(operation, "__name__", operation),
                    attempt,
                )
                raise
            logger.warning(
                "%s hit a concurrent write, retrying (attempt %s of %s)",
                getattr(operation, "__name__", operation),
                attempt + 1,
                MAX_TRANSACTION_ATTEMPTS,
            )
