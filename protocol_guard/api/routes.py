"""
Protocol Guard HTTP Routes
==========================
Thin FastAPI surface over the retrieval service.

Endpoints:
- GET  /health               - Full dependency health (200 / 503)
- GET  /health/quick         - Store ping only
- POST /retrieve             - Validated protocol retrieval (Stages 1-2)
- POST /validate-context     - Stage 3 over an assembled context
- POST /validate-answer      - Stage 4 hallucination gate
- GET  /validation/metrics   - Aggregated validation outcomes
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..core.error_handling import InvalidInputError
from ..core.health import HealthChecker
from ..rag.protocol_service import ProtocolRetrievalService

logger = logging.getLogger(__name__)


# ============================================================================
# Request / Response Models
# ============================================================================

class RetrieveRequest(BaseModel):
    query: str = Field(..., max_length=2000)
    patient_age: Optional[float] = Field(default=None, ge=0, le=130)
    limit: Optional[int] = Field(default=None, ge=1, le=50)


class FindingModel(BaseModel):
    code: str
    severity: str
    message: str
    context: Dict[str, Any] = Field(default_factory=dict)


class ValidationModel(BaseModel):
    stage: str
    valid: bool
    findings: List[FindingModel]


class RetrieveResponse(BaseModel):
    query: Dict[str, Any]
    chunks: List[Dict[str, Any]]
    protocols: List[Dict[str, Any]]
    validation: List[ValidationModel]
    strategy_used: str
    fallbacks_used: List[str]
    degraded: bool
    blocked: bool
    safety_message: Optional[str] = None
    recovery_time_ms: float


class ValidateContextRequest(BaseModel):
    context: str
    retrieved_codes: List[str] = Field(default_factory=list)
    query: Optional[str] = None
    patient_age: Optional[float] = Field(default=None, ge=0, le=130)


class ValidateAnswerRequest(BaseModel):
    answer: str
    retrieved_codes: List[str] = Field(default_factory=list)
    query: Optional[str] = None
    patient_age: Optional[float] = Field(default=None, ge=0, le=130)


def _bad_request(e: InvalidInputError) -> HTTPException:
    logger.info(f"Rejected request: {e.message}")
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.to_dict())


# ============================================================================
# Router
# ============================================================================

def create_router(service: ProtocolRetrievalService, health_checker: HealthChecker) -> APIRouter:
    """Build the router bound to a service instance."""
    router = APIRouter(tags=["protocol-guard"])

    @router.get("/health")
    async def health():
        report = await health_checker.check()
        return JSONResponse(report.to_dict(), status_code=report.http_status)

    @router.get("/health/quick")
    async def health_quick():
        report = await health_checker.quick_check()
        return JSONResponse(report.to_dict(), status_code=report.http_status)

    @router.post("/retrieve", response_model=RetrieveResponse)
    async def retrieve(request: RetrieveRequest):
        try:
            response = await service.retrieve(request.query, request.patient_age, request.limit)
        except InvalidInputError as e:
            raise _bad_request(e)
        return response.to_dict()

    @router.post("/validate-context", response_model=ValidationModel)
    async def validate_context(request: ValidateContextRequest):
        try:
            query = service.normalizer.normalize(request.query, request.patient_age) if request.query else None
            protocols = await service.protocols_for(request.retrieved_codes)
            result = service.pipeline.validate_context(request.context, protocols, query)
        except InvalidInputError as e:
            raise _bad_request(e)
        return result.to_dict()

    @router.post("/validate-answer", response_model=ValidationModel)
    async def validate_answer(request: ValidateAnswerRequest):
        try:
            query = service.normalizer.normalize(request.query, request.patient_age) if request.query else None
            result = await service.validate_answer(request.answer, request.retrieved_codes, query)
        except InvalidInputError as e:
            raise _bad_request(e)
        return result.to_dict()

    @router.get("/validation/metrics")
    async def validation_metrics(stage: Optional[str] = None):
        if service.monitor is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="validation monitor not configured")
        return {
            "metrics": service.monitor.metrics(stage),
            "failure_rate_by_stage": service.monitor.failure_rate_by_stage(),
            "patterns": [p.to_dict() for p in service.monitor.patterns()],
            "recent_failures": service.monitor.recent_failures(),
        }

    return router
