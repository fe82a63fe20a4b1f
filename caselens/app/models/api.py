from __future__ import annotations

from datetime import date, datetime
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator

from .domain import EntityType, FileCategory
from ..services.search import SearchMode


def _parse_date_bound(value: Any) -> Any:
    # "YYYY-MM-DD" stays a date so an upper bound covers the whole day.
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if len(text) == 10:
            return date.fromisoformat(text)
        return datetime.fromisoformat(text.replace("Z", "+00:00"))
    return value


class EntityFilterModel(BaseModel):
    value: str = Field(min_length=1, description="Entity text, matched case-insensitively")
    type: Optional[EntityType] = Field(default=None, description="Restrict the match to one entity bucket")

    @field_validator("type", mode="before")
    @classmethod
    def _bucket_type(cls, value: Any) -> Any:
        if value is None or isinstance(value, EntityType):
            return value
        return EntityType.bucket(str(value))


class SearchFiltersModel(BaseModel):
    fileTypes: List[FileCategory] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    entities: List[EntityFilterModel] = Field(default_factory=list)
    dateFrom: Optional[Union[datetime, date]] = None
    dateTo: Optional[Union[datetime, date]] = None

    @field_validator("fileTypes", mode="before")
    @classmethod
    def _categories(cls, value: Any) -> Any:
        if isinstance(value, list):
            return [FileCategory.parse(item) if isinstance(item, str) else item for item in value]
        return value

    @field_validator("entities", mode="before")
    @classmethod
    def _entity_strings(cls, value: Any) -> Any:
        if isinstance(value, list):
            return [{"value": item} if isinstance(item, str) else item for item in value]
        return value

    @field_validator("dateFrom", "dateTo", mode="before")
    @classmethod
    def _dates(cls, value: Any) -> Any:
        return _parse_date_bound(value)


class SearchRequest(BaseModel):
    query: str = Field(default="", description="Free-text query; empty means filters only")
    mode: SearchMode = SearchMode.COMBINED
    filters: SearchFiltersModel = Field(default_factory=SearchFiltersModel)
    limit: Optional[int] = Field(default=None, ge=1)
    offset: int = Field(default=0, ge=0)
    keywordWeight: Optional[float] = Field(default=None, ge=0.0)
    semanticWeight: Optional[float] = Field(default=None, ge=0.0)


class CaseFileModel(BaseModel):
    id: str
    projectId: str
    name: str
    contentType: str
    fileType: FileCategory
    size: int
    exhibitId: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    addedAt: datetime


class SearchResultModel(BaseModel):
    file: CaseFileModel
    score: float
    keywordScore: Optional[float] = None
    similarity: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    chunkId: Optional[str] = None
    strategies: List[str] = Field(default_factory=list)


class WarningModel(BaseModel):
    component: str
    code: str
    message: str
    context: Dict[str, Any] = Field(default_factory=dict)


class SearchMetaModel(BaseModel):
    totalCount: int = Field(ge=0)
    limit: int = Field(ge=1)
    offset: int = Field(ge=0)
    mode: SearchMode
    requestedMode: SearchMode
    degraded: bool


class SearchResponseModel(BaseModel):
    results: List[SearchResultModel]
    meta: SearchMetaModel
    warnings: List[WarningModel] = Field(default_factory=list)


class QARequest(BaseModel):
    question: str
    fileId: Optional[str] = Field(default=None, description="Answer from a single document")
    limit: Optional[int] = Field(default=None, ge=1, le=50)


class CitationModel(BaseModel):
    text: str
    source: str
    chunkId: Optional[str] = None
    fileId: Optional[str] = None
    fileName: Optional[str] = None


class MatchingChunkModel(BaseModel):
    id: str
    fileId: str
    fileName: str
    chunkIndex: int = Field(ge=0)
    similarity: float
    preview: str
    inContext: bool


class QAResponse(BaseModel):
    answer: str
    confidence: float = Field(ge=0.0, le=1.0)
    citations: List[CitationModel] = Field(default_factory=list)
    needsAttorneyReview: bool
    parseFailed: bool = False
    mode: Literal["project", "document"]
    matchingChunks: List[MatchingChunkModel] = Field(default_factory=list)
    warnings: List[WarningModel] = Field(default_factory=list)


class NextExhibitResponse(BaseModel):
    projectId: str
    exhibitId: str


class EntityModel(BaseModel):
    id: str
    type: str
    bucket: EntityType
    text: str
    chunkId: Optional[str] = None


class FileEntitiesResponse(BaseModel):
    fileId: str
    entities: Dict[str, List[EntityModel]]


class HealthResponse(BaseModel):
    status: Literal["healthy"]
    timestamp: datetime
    service: str
    version: str
    vectorBackend: str
