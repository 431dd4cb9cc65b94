import logging

from rest_framework.response import Response
from rest_framework.views import exception_handler

from .exceptions import CustodyError

logger = logging.getLogger(__name__)


def custody_exception_handler(exc, context):
    if isinstance(exc, CustodyError):
        view = context.get("view")
        logger.info("%s rejected: %s (%s)", type(view).__name__ if view else "request", exc.message, exc.code)
        return Response(exc.as_dict(), status=exc.status_code)
    return exception_handler(exc, context)
