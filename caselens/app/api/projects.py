from fastapi import APIRouter, Depends

from ..models.api import NextExhibitResponse
from ..services.errors import ServiceException
from ..storage.catalog_store import CaseCatalogStore, get_catalog_store
from ..utils.exceptions import raise_service_exception

router = APIRouter()


@router.get("/projects/{project_id}/exhibits/next", response_model=NextExhibitResponse)
def next_exhibit(
    project_id: str,
    catalog: CaseCatalogStore = Depends(get_catalog_store),
) -> NextExhibitResponse:
    try:
        exhibit_id = catalog.next_exhibit_id(project_id)
    except ServiceException as exc:
        raise_service_exception(exc)
    return NextExhibitResponse(projectId=project_id, exhibitId=exhibit_id)
