from fastapi import HTTPException

from ..services.errors import ServiceException, http_status_for_error


def raise_service_exception(exc: ServiceException) -> None:
    raise HTTPException(status_code=http_status_for_error(exc), detail=exc.error.to_dict()) from exc
