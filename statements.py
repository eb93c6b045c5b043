# statements.py
"""Patient statements: generate from outstanding claims, list, mark as sent."""
import logging
from typing import Any, Dict, List, Optional

import db_store
from errors import BadRequestError, NotFoundError, wrap_error
from rcm_utils import OUTSTANDING_STATUSES, now_iso, to_amount

log = logging.getLogger("statements")

DELIVERY_METHODS = ("email", "mail", "portal")


class StatementService:
    def __init__(self, db: Any = db_store):
        self.db = db

    def generate_statement(self, patient_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        try:
            lines = self.db.query_all("""
                SELECT id AS claim_id, service_date, procedure_code, total_amount, COALESCE(paid_amount, 0) AS paid_amount,
                       total_amount - COALESCE(paid_amount, 0) AS balance
                FROM public.billings
                WHERE patient_id = %s AND status = ANY(%s) AND total_amount - COALESCE(paid_amount, 0) > 0
                ORDER BY service_date;
            """, (patient_id, list(OUTSTANDING_STATUSES)))
            if not lines:
                raise BadRequestError("Patient has no outstanding balance", {"patient_id": patient_id})
            total = to_amount(sum(to_amount(l.get("balance")) for l in lines))
            with self.db.transaction() as cur:
                cur.execute("""
                    INSERT INTO public.patient_statements (patient_id, statement_date, total_amount, line_count, status, created_by)
                    VALUES (%s, CURRENT_DATE, %s, %s, 'generated', %s)
                    RETURNING id, patient_id, statement_date, total_amount, status;
                """, (patient_id, total, len(lines), user_id))
                statement = cur.fetchone()
                cur.execute(
                    "UPDATE public.patient_accounts SET last_statement_date = CURRENT_DATE, updated_at = now() WHERE patient_id = %s;",
                    (patient_id,),
                )
        except Exception as e:
            raise wrap_error("Failed to generate patient statement", e, patient_id=patient_id)
        log.info("statement %s generated for patient %s (%.2f)", statement.get("id"), patient_id, total)
        return dict(
            statement,
            total_amount=total,
            line_items=[
                dict(l, total_amount=to_amount(l.get("total_amount")), paid_amount=to_amount(l.get("paid_amount")), balance=to_amount(l.get("balance")))
                for l in lines
            ],
        )

    def get_statements(self, patient_id: Optional[str] = None, status: str = "all", page: int = 1, limit: int = 10) -> Dict[str, Any]:
        where = ["1=1"]
        params: List[Any] = []
        if patient_id:
            where.append("s.patient_id = %s")
            params.append(patient_id)
        if status != "all":
            where.append("s.status = %s")
            params.append(status)
        where_clause = " AND ".join(where)
        try:
            result = self.db.query_page(f"""
                SELECT s.id, s.patient_id, CONCAT(p.first_name, ' ', p.last_name) AS patient_name,
                       s.statement_date, s.total_amount, s.line_count, s.status, s.delivery_method, s.sent_at
                FROM public.patient_statements s
                LEFT JOIN public.patients p ON s.patient_id = p.id
                WHERE {where_clause}
                ORDER BY s.statement_date DESC, s.id DESC
            """, f"SELECT COUNT(*) AS total FROM public.patient_statements s WHERE {where_clause}", params, page, limit)
        except Exception as e:
            raise wrap_error("Failed to fetch patient statements", e, options={"patient_id": patient_id, "status": status})
        return {
            "statements": [dict(s, total_amount=to_amount(s.get("total_amount"))) for s in result["data"]],
            "pagination": result["pagination"],
        }

    def send_statement(self, statement_id: str, delivery_method: str = "email", user_id: Optional[str] = None) -> Dict[str, Any]:
        if delivery_method not in DELIVERY_METHODS:
            raise BadRequestError(f"Unsupported delivery method '{delivery_method}'", {"allowed": list(DELIVERY_METHODS)})
        try:
            existing = self.db.query_one("SELECT id, status FROM public.patient_statements WHERE id = %s;", (statement_id,))
            if not existing:
                raise NotFoundError("Statement not found", {"statement_id": statement_id})
            if existing["status"] != "generated":
                raise BadRequestError("Only generated statements can be sent", {"statement_id": statement_id, "status": existing["status"]})
            # status guard in the WHERE: a concurrent send leaves nothing to update
            updated = self.db.execute("""
                UPDATE public.patient_statements
                SET status = 'sent', delivery_method = %s, sent_at = now()
                WHERE id = %s AND status = 'generated'
                RETURNING id, status, delivery_method, sent_at;
            """, (delivery_method, statement_id))
            if not updated:
                raise BadRequestError("Only generated statements can be sent", {"statement_id": statement_id, "status": "sent"})
        except Exception as e:
            raise wrap_error("Failed to send patient statement", e, statement_id=statement_id)
        self.db.audit_log("patient_statements", statement_id, "SEND", {"status": existing["status"]}, {"status": "sent", "delivery_method": delivery_method}, user_id)
        return dict(updated, queued_at=now_iso())
