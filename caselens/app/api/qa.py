from __future__ import annotations

from fastapi import APIRouter, Depends

from ..models.api import CitationModel, MatchingChunkModel, QARequest, QAResponse, WarningModel
from ..services.errors import ServiceException
from ..services.qa import QAAnswer, QAScope, RetrievalQAService, get_qa_service
from ..utils.exceptions import raise_service_exception

router = APIRouter()


@router.post("/projects/{project_id}/qa", response_model=QAResponse)
async def answer_project_question(
    project_id: str,
    payload: QARequest,
    service: RetrievalQAService = Depends(get_qa_service),
) -> QAResponse:
    try:
        answer = await service.answer_question(
            QAScope(project_id=project_id, file_id=payload.fileId),
            payload.question,
            limit=payload.limit,
        )
    except ServiceException as exc:
        raise_service_exception(exc)
    return _qa_response_model(answer)


def _qa_response_model(answer: QAAnswer) -> QAResponse:
    return QAResponse(
        answer=answer.answer,
        confidence=answer.confidence,
        citations=[
            CitationModel(
                text=citation.text,
                source=citation.source,
                chunkId=citation.chunk_id,
                fileId=citation.file_id,
                fileName=citation.file_name,
            )
            for citation in answer.citations
        ],
        needsAttorneyReview=answer.needs_review,
        parseFailed=answer.parse_failed,
        mode=answer.mode,
        matchingChunks=[
            MatchingChunkModel(
                id=item.chunk_id,
                fileId=item.file_id,
                fileName=item.file_name,
                chunkIndex=item.chunk_index,
                similarity=item.similarity,
                preview=item.preview,
                inContext=item.in_context,
            )
            for item in answer.provenance
        ],
        warnings=[WarningModel(**warning.to_dict()) for warning in answer.warnings],
    )
