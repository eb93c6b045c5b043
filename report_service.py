# report_service.py
"""
Report generation for the RCM API.

A report is built on demand from a ReportDefinition: the definition names the
report, tags its category and points at a builder. Builders receive the data
layer and the caller's parameters and return the `data` payload; the generator
wraps it in the envelope:

    {report_id, report_type, generated_at, parameters, data, implemented}

Builders that have no real logic yet return a NotImplementedReport instead of
a fabricated payload, so callers can tell "no data" from "not built".
"""
from __future__ import annotations

import json
import time
import threading
import logging
from enum import Enum
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Sequence

import db_store
from errors import DataAccessError
from rcm_utils import ClaimStatus, now_iso, round_half_up, to_int

log = logging.getLogger("report_service")


class ReportType(str, Enum):
    cms_compliance = "cms_compliance"
    revenue_analysis = "revenue_analysis"
    denial_trends = "denial_trends"


class ReportCategory(str, Enum):
    compliance = "compliance"
    financial = "financial"
    operational = "operational"


class NotImplementedReport(NamedTuple):
    message: str

    def as_data(self) -> Dict[str, Any]:
        return {"status": "not_implemented", "message": self.message}


Builder = Callable[[Any, Dict[str, Any]], Any]


class ReportDefinition(NamedTuple):
    report_type: str
    name: str
    description: str
    category: ReportCategory
    id_prefix: str
    builder: Builder

    def descriptor(self) -> Dict[str, str]:
        return {
            "id": self.report_type,
            "name": self.name,
            "description": self.description,
            "type": self.category.value,
        }

# -----------------------
# Builders

CMS_COMPLIANCE_SCORE = 95
CMS_RECOMMENDATIONS = (
    "Continue monitoring claim submission timeliness",
    "Review denied claims for missing documentation",
)

CMS_COMPLIANCE_SQL = """
    SELECT
        COUNT(*) AS total_claims,
        SUM(CASE WHEN status = %s THEN 1 ELSE 0 END) AS paid_claims,
        SUM(CASE WHEN status = %s THEN 1 ELSE 0 END) AS denied_claims,
        AVG(total_amount) AS avg_amount
    FROM public.billings
    WHERE created_at >= NOW() - INTERVAL '30 days';
"""

def build_cms_compliance(db: Any, parameters: Dict[str, Any]) -> Dict[str, Any]:
    row = db.query_one(CMS_COMPLIANCE_SQL, (ClaimStatus.paid.value, ClaimStatus.denied.value)) or {}
    return {
        "summary": {
            "total_claims": to_int(row.get("total_claims")),
            "paid_claims": to_int(row.get("paid_claims")),
            "denied_claims": to_int(row.get("denied_claims")),
            "average_amount": round_half_up(row.get("avg_amount")),
        },
        # fixed until a scoring model exists
        "compliance_score": CMS_COMPLIANCE_SCORE,
        "recommendations": list(CMS_RECOMMENDATIONS),
    }

def build_revenue_analysis(db: Any, parameters: Dict[str, Any]) -> NotImplementedReport:
    return NotImplementedReport("Revenue analysis report - implementation pending")

def build_denial_trends(db: Any, parameters: Dict[str, Any]) -> NotImplementedReport:
    return NotImplementedReport("Denial trends report - implementation pending")


DEFAULT_REPORTS: Sequence[ReportDefinition] = (
    ReportDefinition(
        report_type=ReportType.cms_compliance.value,
        name="CMS Compliance Report",
        description="Claim volume, payment and denial summary for the last 30 days",
        category=ReportCategory.compliance,
        id_prefix="CMS",
        builder=build_cms_compliance,
    ),
    ReportDefinition(
        report_type=ReportType.revenue_analysis.value,
        name="Revenue Analysis",
        description="Billed versus collected revenue by period and payer",
        category=ReportCategory.financial,
        id_prefix="REV",
        builder=build_revenue_analysis,
    ),
    ReportDefinition(
        report_type=ReportType.denial_trends.value,
        name="Denial Trends",
        description="Denial volume and top denial reasons over time",
        category=ReportCategory.operational,
        id_prefix="DEN",
        builder=build_denial_trends,
    ),
)

# -----------------------
# Optional persistence for lookup-by-id

class DbReportStore:
    """Keeps generated envelopes in public.rcm_reports."""

    def __init__(self, db: Any = db_store):
        self.db = db

    def save(self, report: Dict[str, Any]):
        row = self.db.execute("""
            INSERT INTO public.rcm_reports (report_id, report_type, generated_at, parameters, data)
            VALUES (%s, %s, %s, %s, %s)
            ON CONFLICT (report_id) DO NOTHING
            RETURNING report_id;
        """, (
            report["report_id"],
            report["report_type"],
            report["generated_at"],
            json.dumps(report["parameters"], default=str),
            json.dumps(report["data"], default=str),
        ))
        if not row:
            raise ValueError(f"Report id already recorded: {report['report_id']}")

    def get(self, report_id: str) -> Optional[Dict[str, Any]]:
        row = self.db.query_one(
            "SELECT report_id, report_type, generated_at, parameters, data FROM public.rcm_reports WHERE report_id = %s;",
            (report_id,),
        )
        if not row:
            return None
        generated_at = row.get("generated_at")
        if hasattr(generated_at, "isoformat"):
            row["generated_at"] = generated_at.isoformat()
        return row

# -----------------------
# Generator

class ReportGenerator:
    def __init__(self, definitions: Sequence[ReportDefinition] = DEFAULT_REPORTS, db: Any = db_store, store: Optional[DbReportStore] = None):
        self.definitions = tuple(definitions)
        self._by_type = {d.report_type: d for d in self.definitions}
        self.db = db
        self.store = store
        self._id_lock = threading.Lock()
        self._last_stamp = 0

    def _next_report_id(self, prefix: str) -> str:
        # millisecond stamps, bumped so ids from one generator never repeat
        with self._id_lock:
            stamp = max(int(time.time() * 1000), self._last_stamp + 1)
            self._last_stamp = stamp
        return f"{prefix}_{stamp}"

    def list_available_reports(self) -> List[Dict[str, str]]:
        try:
            return [d.descriptor() for d in self.definitions]
        except Exception as e:
            log.exception("listing reports failed")
            raise DataAccessError("Failed to fetch available reports", {"original_error": str(e)})

    def generate_report(self, report_type: Any, parameters: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        if parameters is None:
            parameters = {}
        type_key = report_type.value if isinstance(report_type, Enum) else report_type
        log.info("generating report type=%s", type_key)
        try:
            definition = self._by_type.get(type_key)
            if definition is None:
                raise ValueError(f"Unknown report type: {type_key}")
            built = definition.builder(self.db, parameters)
            implemented = not isinstance(built, NotImplementedReport)
            report = {
                "report_id": self._next_report_id(definition.id_prefix),
                "report_type": definition.report_type,
                "generated_at": now_iso(),
                "parameters": parameters,
                "data": built if implemented else built.as_data(),
                "implemented": implemented,
            }
            if self.store is not None:
                self.store.save(report)
            return report
        except Exception as e:
            log.exception("report generation failed type=%s", type_key)
            raise DataAccessError("Failed to generate report", {
                "original_error": str(e),
                "report_type": type_key,
                "parameters": parameters,
            })

    def get_report_by_id(self, report_id: str) -> Dict[str, Any]:
        try:
            if self.store is not None:
                stored = self.store.get(report_id)
                if stored:
                    return dict(stored, status="completed")
            return {
                "report_id": report_id,
                "status": "completed",
                "data": {"message": "Report data not available - report history is not retained"},
            }
        except Exception as e:
            log.exception("report lookup failed id=%s", report_id)
            raise DataAccessError("Failed to fetch report", {"original_error": str(e), "report_id": report_id})
