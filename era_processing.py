# era_processing.py
"""
ERA (835 remittance) intake and payment posting.

The ERA body is read line by line; only claim-payment lines are used:

    CLP*<claim_id>*<patient_id>*<service_date>*<billed>*<paid>*<adjustment>*<reason,codes>*<check_no>*<payer>

Anything else (ISA/GS/ST envelopes, service lines) is ignored.
"""
import json
import logging
from datetime import date
from typing import Any, Dict, List, Optional

import db_store
from errors import BadRequestError, NotFoundError, wrap_error
from rcm_utils import ClaimStatus, now_iso, to_amount

log = logging.getLogger("era_processing")

# -----------------------
# Parsing
def _field(parts: List[str], idx: int) -> Optional[str]:
    if idx < len(parts):
        v = parts[idx].strip()
        return v or None
    return None

def _num(parts: List[str], idx: int) -> float:
    v = _field(parts, idx)
    try:
        return to_amount(v)
    except Exception:
        return 0.0

def parse_era(era_data: str) -> Dict[str, Any]:
    payments: List[Dict[str, Any]] = []
    total_payments = 0.0
    total_adjustments = 0.0
    for raw in (era_data or "").splitlines():
        line = raw.strip().rstrip("~")
        if not line.startswith("CLP*"):
            continue
        parts = line.split("*")
        reasons = _field(parts, 7)
        payment = {
            "claim_id": _field(parts, 1),
            "patient_id": _field(parts, 2),
            "service_date": _field(parts, 3) or date.today().isoformat(),
            "billed_amount": _num(parts, 4),
            "paid_amount": _num(parts, 5),
            "adjustment_amount": _num(parts, 6),
            "reason_codes": [c.strip() for c in reasons.split(",") if c.strip()] if reasons else [],
            "check_number": _field(parts, 8),
            "payer_name": _field(parts, 9) or "Unknown Payer",
        }
        payments.append(payment)
        total_payments += payment["paid_amount"]
        total_adjustments += payment["adjustment_amount"]
    return {
        "payments": payments,
        "total_payments": to_amount(total_payments),
        "total_adjustments": to_amount(total_adjustments),
    }

# -----------------------
# Service
class ERAProcessor:
    def __init__(self, db: Any = db_store):
        self.db = db

    def process_era_file(self, file_name: str, era_data: str, auto_post: bool = False, user_id: Optional[str] = None) -> Dict[str, Any]:
        if not file_name or not era_data:
            raise BadRequestError("ERA data and file name are required", {"file_name": file_name})
        parsed = parse_era(era_data)
        try:
            with self.db.transaction() as cur:
                cur.execute("""
                    INSERT INTO public.era_files (file_name, file_size, total_payments, total_adjustments, status, auto_posted, processed_by, processed_at)
                    VALUES (%s, %s, %s, %s, 'processed', %s, %s, now())
                    RETURNING id;
                """, (file_name, len(era_data), parsed["total_payments"], parsed["total_adjustments"], auto_post, user_id))
                era_id = cur.fetchone()["id"]
                for p in parsed["payments"]:
                    cur.execute("""
                        INSERT INTO public.era_payment_details
                            (era_file_id, claim_id, patient_id, service_date, billed_amount, paid_amount,
                             adjustment_amount, reason_codes, check_number, payer_name, status)
                        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, 'pending')
                        RETURNING id;
                    """, (
                        era_id, p["claim_id"], p["patient_id"], p["service_date"], p["billed_amount"],
                        p["paid_amount"], p["adjustment_amount"], json.dumps(p["reason_codes"]),
                        p["check_number"], p["payer_name"],
                    ))
                    p["era_detail_id"] = cur.fetchone()["id"]
        except Exception as e:
            raise wrap_error("Failed to process ERA file", e, file_name=file_name, user_id=user_id)

        auto_posted = 0
        if auto_post:
            for p in parsed["payments"]:
                if p["paid_amount"] <= 0:
                    continue
                p["auto_posted"] = self._auto_post(p, user_id)
                if p["auto_posted"]:
                    auto_posted += 1
        log.info("ERA %s processed: %d payments, %d auto-posted", file_name, len(parsed["payments"]), auto_posted)
        self.db.audit_log("era_files", era_id, "PROCESS", None, {
            "file_name": file_name,
            "total_payments": parsed["total_payments"],
            "processed_count": len(parsed["payments"]),
            "auto_posted_count": auto_posted,
        }, user_id)
        return {
            "era_id": era_id,
            "file_name": file_name,
            "total_payments": parsed["total_payments"],
            "total_adjustments": parsed["total_adjustments"],
            "processed_count": len(parsed["payments"]),
            "auto_posted_count": auto_posted,
            "payments": parsed["payments"],
        }

    def _auto_post(self, payment: Dict[str, Any], user_id: Optional[str]) -> bool:
        # one failed line does not fail the file; the line is flagged instead
        try:
            self.post_payment(
                claim_id=payment["claim_id"],
                amount=payment["paid_amount"],
                payment_date=payment["service_date"],
                method="ERA",
                check_number=payment["check_number"],
                adjustment_amount=payment["adjustment_amount"],
                adjustment_reason=", ".join(payment["reason_codes"]),
                user_id=user_id,
            )
            detail_status = "auto_posted"
        except Exception as e:
            log.warning("auto-post failed for claim %s: %s", payment.get("claim_id"), e)
            detail_status = "post_failed"
        payment["detail_status"] = detail_status
        try:
            self.db.execute(
                "UPDATE public.era_payment_details SET status = %s, posted_at = CASE WHEN %s = 'auto_posted' THEN now() END WHERE id = %s;",
                (detail_status, detail_status, payment["era_detail_id"]),
            )
        except Exception:
            # the file is already committed; the line stays 'pending' and is reported back
            log.exception("could not flag ERA detail %s as %s", payment.get("era_detail_id"), detail_status)
            payment["detail_status"] = "pending"
        return detail_status == "auto_posted"

    def get_era_files(self, page: int = 1, limit: int = 10) -> Dict[str, Any]:
        try:
            result = self.db.query_page("""
                SELECT f.id, f.file_name, f.file_size, f.total_payments, f.total_adjustments, f.status,
                       f.auto_posted, f.processed_at, COUNT(d.id) AS payment_count
                FROM public.era_files f
                LEFT JOIN public.era_payment_details d ON d.era_file_id = f.id
                GROUP BY f.id
                ORDER BY f.processed_at DESC
            """, "SELECT COUNT(*) AS total FROM public.era_files", [], page, limit)
        except Exception as e:
            raise wrap_error("Failed to fetch ERA files", e, options={"page": page, "limit": limit})
        files = [
            dict(f, total_payments=to_amount(f.get("total_payments")), total_adjustments=to_amount(f.get("total_adjustments")))
            for f in result["data"]
        ]
        return {"files": files, "pagination": result["pagination"]}

    # -----------------------
    # Payments
    def post_payment(self, claim_id: str, amount: Any, payment_date: Optional[str] = None, method: Optional[str] = None, check_number: Optional[str] = None, adjustment_amount: Any = 0, adjustment_reason: Optional[str] = None, user_id: Optional[str] = None) -> Dict[str, Any]:
        amount = to_amount(amount)
        adjustment = to_amount(adjustment_amount)
        if not claim_id or amount <= 0:
            raise BadRequestError("Claim ID and a positive payment amount are required", {"claim_id": claim_id, "amount": amount})
        payment_date = payment_date or date.today().isoformat()
        try:
            with self.db.transaction() as cur:
                # row lock: concurrent postings to one claim apply in sequence
                cur.execute(
                    "SELECT id, patient_id, total_amount, paid_amount, status FROM public.billings WHERE id = %s FOR UPDATE;",
                    (claim_id,),
                )
                claim = cur.fetchone()
                if not claim:
                    raise NotFoundError("Claim not found", {"claim_id": claim_id})
                new_paid = to_amount(to_amount(claim.get("paid_amount")) + amount)
                outstanding = to_amount(to_amount(claim.get("total_amount")) - new_paid - adjustment)
                new_status = ClaimStatus.paid.value if outstanding <= 0 else claim["status"]
                cur.execute("""
                    INSERT INTO public.payments
                        (claim_id, patient_id, payment_amount, payment_date, payment_method,
                         check_number, adjustment_amount, adjustment_reason, posted_by, posted_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, now())
                    RETURNING id;
                """, (claim_id, claim["patient_id"], amount, payment_date, method, check_number, adjustment, adjustment_reason, user_id))
                payment_id = cur.fetchone()["id"]
                cur.execute("""
                    UPDATE public.billings
                    SET paid_amount = %s, status = %s, updated_at = now()
                    WHERE id = %s;
                """, (new_paid, new_status, claim_id))
                cur.execute("""
                    UPDATE public.patient_accounts
                    SET total_balance = GREATEST(total_balance - %s, 0), last_payment_date = %s, updated_at = now()
                    WHERE patient_id = %s;
                """, (amount, payment_date, claim["patient_id"]))
        except Exception as e:
            raise wrap_error("Failed to post payment", e, claim_id=claim_id, amount=amount)
        self.db.audit_log(
            "billings", claim_id, "PAYMENT_POST",
            {"paid_amount": claim.get("paid_amount"), "status": claim["status"]},
            {"paid_amount": new_paid, "status": new_status, "payment_amount": amount},
            user_id,
        )
        return {
            "payment_id": payment_id,
            "claim_id": claim_id,
            "payment_amount": amount,
            "new_paid_amount": new_paid,
            "outstanding_amount": max(outstanding, 0.0),
            "status": new_status,
            "posted_at": now_iso(),
        }

    def get_payment_posting_data(self, date_from: Optional[str] = None, date_to: Optional[str] = None, payment_method: str = "all", page: int = 1, limit: int = 10) -> Dict[str, Any]:
        where = ["1=1"]
        params: List[Any] = []
        if date_from:
            where.append("p.payment_date >= %s")
            params.append(date_from)
        if date_to:
            where.append("p.payment_date <= %s")
            params.append(date_to)
        if payment_method != "all":
            where.append("p.payment_method = %s")
            params.append(payment_method)
        where_clause = " AND ".join(where)
        try:
            result = self.db.query_page(f"""
                SELECT
                    p.id, p.claim_id, p.patient_id, CONCAT(pt.first_name, ' ', pt.last_name) AS patient_name,
                    p.payment_amount, p.payment_date, p.payment_method, p.check_number,
                    p.adjustment_amount, p.adjustment_reason, p.posted_at, p.posted_by,
                    b.total_amount AS claim_amount, b.procedure_code
                FROM public.payments p
                LEFT JOIN public.billings b ON p.claim_id = b.id
                LEFT JOIN public.patients pt ON p.patient_id = pt.id
                WHERE {where_clause}
                ORDER BY p.posted_at DESC
            """, f"SELECT COUNT(*) AS total FROM public.payments p WHERE {where_clause}", params, page, limit)
        except Exception as e:
            raise wrap_error("Failed to fetch payment posting data", e, options={"date_from": date_from, "date_to": date_to, "payment_method": payment_method})
        payments = [
            dict(
                p,
                payment_amount=to_amount(p.get("payment_amount")),
                adjustment_amount=to_amount(p.get("adjustment_amount")),
                claim_amount=to_amount(p.get("claim_amount")),
            )
            for p in result["data"]
        ]
        return {
            "payments": payments,
            "total_amount": to_amount(sum(p["payment_amount"] for p in payments)),
            "pagination": result["pagination"],
            "filters": {"date_from": date_from, "date_to": date_to, "payment_method": payment_method},
        }
