# rcm_routes.py
"""
RCM HTTP surface: claims, dashboard/analytics, A/R aging, collections,
denials, payments, ERA files, patient statements and reports.

Request bodies are pydantic models, so malformed input is rejected before a
handler runs (see the RequestValidationError handler in main.py). Handlers
only delegate to the service objects obtained through Depends.
"""
import os
from datetime import date
from functools import lru_cache
from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, Header, Query
from pydantic import BaseModel, Field, StrictStr, constr

from era_processing import ERAProcessor
from rcm_service import RCMService
from rcm_utils import ClaimStatus
from report_service import DbReportStore, ReportGenerator
from statements import StatementService


router = APIRouter(tags=["RCM"])

# -----------------------
# Service providers (overridable in tests via app.dependency_overrides)
@lru_cache
def get_rcm_service() -> RCMService:
    return RCMService()

@lru_cache
def get_era_processor() -> ERAProcessor:
    return ERAProcessor()

@lru_cache
def get_statement_service() -> StatementService:
    return StatementService()

@lru_cache
def get_report_generator() -> ReportGenerator:
    persist = os.getenv("RCM_PERSIST_REPORTS", "false").strip().lower() in ("1", "true", "yes")
    return ReportGenerator(store=DbReportStore() if persist else None)

def get_user_id(x_user_id: Optional[str] = Header(None)) -> Optional[str]:
    return x_user_id

def _ok(data: Any) -> Dict[str, Any]:
    return {"success": True, "data": data}

# -----------------------
# Request bodies
ClaimId = constr(strict=True, strip_whitespace=True, min_length=1)

class BulkSubmitRequest(BaseModel):
    claimIds: List[ClaimId] = Field(..., min_length=1)

class StatusUpdateRequest(BaseModel):
    status: ClaimStatus
    notes: Optional[StrictStr] = None

class CollectionStatusUpdate(BaseModel):
    status: Optional[StrictStr] = None
    priority: Optional[Literal["low", "medium", "high", "urgent"]] = None
    assignedCollector: Optional[StrictStr] = None
    notes: Optional[StrictStr] = None

class PaymentPostRequest(BaseModel):
    claimId: ClaimId
    paymentAmount: float = Field(..., gt=0)
    paymentDate: Optional[date] = None
    paymentMethod: Optional[StrictStr] = None
    checkNumber: Optional[StrictStr] = None
    adjustmentAmount: float = Field(0, ge=0)
    adjustmentReason: Optional[StrictStr] = None

class ERAProcessRequest(BaseModel):
    fileName: constr(strip_whitespace=True, min_length=1)
    eraData: constr(min_length=1)
    autoPost: bool = False

class StatementSendRequest(BaseModel):
    deliveryMethod: Literal["email", "mail", "portal"] = "email"

class ReportRequest(BaseModel):
    reportType: StrictStr
    parameters: Dict[str, Any] = Field(default_factory=dict)

# -----------------------
# Dashboard / analytics
@router.get("/dashboard", response_model=None)
def get_dashboard(timeframe: str = Query("30d"), svc: RCMService = Depends(get_rcm_service)):
    return _ok(svc.get_dashboard_data(timeframe))

@router.get("/analytics", response_model=None)
def get_analytics(timeframe: str = Query("90d"), svc: RCMService = Depends(get_rcm_service)):
    return _ok(svc.get_analytics(timeframe))

# -----------------------
# Claims
@router.get("/claims", response_model=None)
def list_claims(
    status: str = Query("all"),
    search: str = Query(""),
    date_from: Optional[date] = Query(None, alias="dateFrom"),
    date_to: Optional[date] = Query(None, alias="dateTo"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    svc: RCMService = Depends(get_rcm_service),
):
    return _ok(svc.get_claims(status=status, search=search, date_from=date_from, date_to=date_to, page=page, limit=limit))

@router.get("/claims/stats", response_model=None)
def claim_stats(timeframe: str = Query("30d"), svc: RCMService = Depends(get_rcm_service)):
    return _ok(svc.get_claim_stats(timeframe))

@router.post("/claims/bulk-submit", response_model=None)
def bulk_submit_claims(body: BulkSubmitRequest, svc: RCMService = Depends(get_rcm_service), user_id: Optional[str] = Depends(get_user_id)):
    return _ok(svc.bulk_submit_claims(body.claimIds, user_id))

@router.get("/claims/{claim_id}", response_model=None)
def get_claim(claim_id: str, svc: RCMService = Depends(get_rcm_service)):
    return _ok(svc.get_claim_by_id(claim_id))

@router.post("/claims/{claim_id}/submit", response_model=None)
def submit_claim(claim_id: str, svc: RCMService = Depends(get_rcm_service), user_id: Optional[str] = Depends(get_user_id)):
    return _ok(svc.submit_claim(claim_id, user_id))

@router.put("/claims/{claim_id}/status", response_model=None)
def update_claim_status(claim_id: str, body: StatusUpdateRequest, svc: RCMService = Depends(get_rcm_service), user_id: Optional[str] = Depends(get_user_id)):
    return _ok(svc.update_claim_status(claim_id, body.status.value, body.notes, user_id))

# -----------------------
# A/R aging, collections, denials
@router.get("/ar-aging", response_model=None)
def ar_aging(
    include_zero_balance: bool = Query(False, alias="includeZeroBalance"),
    payer_id: Optional[str] = Query(None, alias="payerId"),
    svc: RCMService = Depends(get_rcm_service),
):
    return _ok(svc.get_ar_aging_report(include_zero_balance, payer_id))

@router.get("/collections", response_model=None)
def collections(
    status: str = Query("all"),
    priority: str = Query("all"),
    aging: str = Query("all", alias="agingBucket"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    svc: RCMService = Depends(get_rcm_service),
):
    return _ok(svc.get_collections_workflow(status, priority, aging, page, limit))

@router.put("/collections/{account_id}/status", response_model=None)
def update_collection_status(account_id: str, body: CollectionStatusUpdate, svc: RCMService = Depends(get_rcm_service), user_id: Optional[str] = Depends(get_user_id)):
    return _ok(svc.update_collection_status(account_id, body.status, body.priority, body.assignedCollector, body.notes, user_id))

@router.get("/denials/analytics", response_model=None)
def denial_analytics(timeframe: str = Query("30d"), svc: RCMService = Depends(get_rcm_service)):
    return _ok(svc.get_denial_analytics(timeframe))

@router.get("/denials/trends", response_model=None)
def denial_trends(timeframe: str = Query("30d"), svc: RCMService = Depends(get_rcm_service)):
    return _ok(svc.get_denial_trends(timeframe))

# -----------------------
# Payments / ERA
@router.get("/payments", response_model=None)
def payments(
    date_from: Optional[date] = Query(None, alias="dateFrom"),
    date_to: Optional[date] = Query(None, alias="dateTo"),
    payment_method: str = Query("all", alias="paymentMethod"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    era: ERAProcessor = Depends(get_era_processor),
):
    return _ok(era.get_payment_posting_data(date_from, date_to, payment_method, page, limit))

@router.post("/payments/post", response_model=None)
def post_payment(body: PaymentPostRequest, era: ERAProcessor = Depends(get_era_processor), user_id: Optional[str] = Depends(get_user_id)):
    return _ok(era.post_payment(
        claim_id=body.claimId,
        amount=body.paymentAmount,
        payment_date=body.paymentDate.isoformat() if body.paymentDate else None,
        method=body.paymentMethod,
        check_number=body.checkNumber,
        adjustment_amount=body.adjustmentAmount,
        adjustment_reason=body.adjustmentReason,
        user_id=user_id,
    ))

@router.post("/era/process", response_model=None)
def process_era(body: ERAProcessRequest, era: ERAProcessor = Depends(get_era_processor), user_id: Optional[str] = Depends(get_user_id)):
    return _ok(era.process_era_file(body.fileName, body.eraData, body.autoPost, user_id))

@router.get("/era/files", response_model=None)
def era_files(page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100), era: ERAProcessor = Depends(get_era_processor)):
    return _ok(era.get_era_files(page, limit))

# -----------------------
# Patient statements
@router.post("/patients/{patient_id}/statements/generate", response_model=None)
def generate_statement(patient_id: str, svc: StatementService = Depends(get_statement_service), user_id: Optional[str] = Depends(get_user_id)):
    return _ok(svc.generate_statement(patient_id, user_id))

@router.get("/statements", response_model=None)
def list_statements(
    patient_id: Optional[str] = Query(None, alias="patientId"),
    status: str = Query("all"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    svc: StatementService = Depends(get_statement_service),
):
    return _ok(svc.get_statements(patient_id, status, page, limit))

@router.post("/statements/{statement_id}/send", response_model=None)
def send_statement(statement_id: str, body: Optional[StatementSendRequest] = None, svc: StatementService = Depends(get_statement_service), user_id: Optional[str] = Depends(get_user_id)):
    method = body.deliveryMethod if body else "email"
    return _ok(svc.send_statement(statement_id, method, user_id))

# -----------------------
# Reports
@router.get("/reports", response_model=None)
def list_reports(gen: ReportGenerator = Depends(get_report_generator)):
    return _ok(gen.list_available_reports())

@router.post("/reports/generate", response_model=None)
def generate_report(body: ReportRequest, gen: ReportGenerator = Depends(get_report_generator)):
    return _ok(gen.generate_report(body.reportType, body.parameters))

@router.get("/reports/{report_id}", response_model=None)
def get_report(report_id: str, gen: ReportGenerator = Depends(get_report_generator)):
    return _ok(gen.get_report_by_id(report_id))
