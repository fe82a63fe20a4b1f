from __future__ import annotations

from fastapi import APIRouter, Depends

from ..models.api import (
    CaseFileModel,
    SearchMetaModel,
    SearchRequest,
    SearchResponseModel,
    SearchResultModel,
    WarningModel,
)
from ..models.domain import CaseFile
from ..services.errors import ServiceException
from ..services.filters import EntityFilter, SearchFilters
from ..services.search import HybridSearchService, SearchQuery, SearchResponse, get_search_service
from ..utils.exceptions import raise_service_exception

router = APIRouter()


@router.post("/projects/{project_id}/search", response_model=SearchResponseModel)
async def search_project_files(
    project_id: str,
    payload: SearchRequest,
    service: HybridSearchService = Depends(get_search_service),
) -> SearchResponseModel:
    query = SearchQuery(
        project_id=project_id,
        text=payload.query,
        mode=payload.mode,
        filters=SearchFilters(
            file_types=list(payload.filters.fileTypes),
            tags=list(payload.filters.tags),
            entities=[EntityFilter(value=item.value, entity_type=item.type) for item in payload.filters.entities],
            date_from=payload.filters.dateFrom,
            date_to=payload.filters.dateTo,
        ),
        limit=payload.limit,
        offset=payload.offset,
        keyword_weight=payload.keywordWeight,
        semantic_weight=payload.semanticWeight,
    )
    try:
        response = await service.search(query)
    except ServiceException as exc:
        raise_service_exception(exc)
    return _search_response_model(response)


def case_file_model(case_file: CaseFile) -> CaseFileModel:
    return CaseFileModel(
        id=case_file.id,
        projectId=case_file.project_id,
        name=case_file.name,
        contentType=case_file.content_type,
        fileType=case_file.category,
        size=case_file.size,
        exhibitId=case_file.exhibit_id,
        metadata=dict(case_file.metadata),
        addedAt=case_file.added_at,
    )


def _search_response_model(response: SearchResponse) -> SearchResponseModel:
    return SearchResponseModel(
        results=[
            SearchResultModel(
                file=case_file_model(result.file),
                score=result.score,
                keywordScore=result.keyword_score,
                similarity=result.similarity,
                chunkId=result.chunk_id,
                strategies=list(result.strategies),
            )
            for result in response.results
        ],
        meta=SearchMetaModel(
            totalCount=response.total_count,
            limit=response.limit,
            offset=response.offset,
            mode=response.mode,
            requestedMode=response.requested_mode,
            degraded=response.degraded,
        ),
        warnings=[WarningModel(**warning.to_dict()) for warning in response.warnings],
    )
