from typing import Dict, List

from fastapi import APIRouter, Depends

from ..models.api import EntityModel, FileEntitiesResponse
from ..models.domain import EntityType
from ..services.errors import NotFoundError, ServiceComponent
from ..storage.catalog_store import CaseCatalogStore, get_catalog_store
from ..utils.exceptions import raise_service_exception

router = APIRouter()


@router.get("/files/{file_id}/entities", response_model=FileEntitiesResponse)
def file_entities(
    file_id: str,
    catalog: CaseCatalogStore = Depends(get_catalog_store),
) -> FileEntitiesResponse:
    """Entities extracted from a file, grouped by entity bucket."""

    if catalog.get_file(file_id) is None:
        raise_service_exception(
            NotFoundError.build(
                ServiceComponent.CATALOG,
                "FILE_NOT_FOUND",
                f"File {file_id} does not exist",
                file_id=file_id,
            )
        )
    grouped: Dict[str, List[EntityModel]] = {bucket.value: [] for bucket in EntityType}
    for entity in catalog.list_file_entities(file_id):
        grouped[entity.bucket.value].append(
            EntityModel(
                id=entity.id,
                type=entity.entity_type,
                bucket=entity.bucket,
                text=entity.text,
                chunkId=entity.chunk_id,
            )
        )
    return FileEntitiesResponse(
        fileId=file_id,
        entities={bucket: items for bucket, items in grouped.items() if items},
    )
