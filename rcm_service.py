# rcm_service.py
"""
Claims, dashboard, A/R aging, denials and collections.

All SQL targets Postgres through db_store. Each public method wraps
unexpected failures into DataAccessError with the arguments it was called
with; NotFoundError/BadRequestError raised on purpose pass straight through.
"""
import logging
from typing import Any, Dict, List, Optional

import db_store
from errors import BadRequestError, NotFoundError, wrap_error
from rcm_utils import (
    AGING_BUCKET_DAYS,
    AGING_BUCKETS,
    OUTSTANDING_STATUSES,
    SUBMITTABLE_STATUSES,
    ClaimStatus,
    aging_bucket,
    claim_recommendations,
    collectability_score,
    collection_rate,
    denial_rate,
    now_iso,
    timeframe_interval,
    to_amount,
    to_int,
)

log = logging.getLogger("rcm_service")

_DENIED = ClaimStatus.denied.value


class RCMService:
    def __init__(self, db: Any = db_store):
        self.db = db

    # -----------------------
    # Dashboard / analytics
    def get_dashboard_data(self, timeframe: str = "30d") -> Dict[str, Any]:
        interval = timeframe_interval(timeframe)
        try:
            claims = self.db.query_one("""
                SELECT
                    COUNT(*) AS total_claims,
                    SUM(CASE WHEN status = 'draft' THEN 1 ELSE 0 END) AS draft_claims,
                    SUM(CASE WHEN status = 'submitted' THEN 1 ELSE 0 END) AS submitted_claims,
                    SUM(CASE WHEN status = 'paid' THEN 1 ELSE 0 END) AS paid_claims,
                    SUM(CASE WHEN status = 'denied' THEN 1 ELSE 0 END) AS denied_claims,
                    SUM(total_amount) AS total_billed,
                    SUM(paid_amount) AS total_collected,
                    AVG(total_amount) AS avg_claim_amount
                FROM public.billings
                WHERE created_at >= NOW() - %s::interval;
            """, (interval,)) or {}
            ar = self.db.query_one("""
                SELECT
                    SUM(CASE WHEN CURRENT_DATE - service_date <= 30 THEN total_amount - paid_amount ELSE 0 END) AS aging_0_30,
                    SUM(CASE WHEN CURRENT_DATE - service_date BETWEEN 31 AND 60 THEN total_amount - paid_amount ELSE 0 END) AS aging_31_60,
                    SUM(CASE WHEN CURRENT_DATE - service_date BETWEEN 61 AND 90 THEN total_amount - paid_amount ELSE 0 END) AS aging_61_90,
                    SUM(CASE WHEN CURRENT_DATE - service_date > 90 THEN total_amount - paid_amount ELSE 0 END) AS aging_90_plus
                FROM public.billings
                WHERE status = ANY(%s);
            """, (list(OUTSTANDING_STATUSES),)) or {}
            activity = self.db.query_all("""
                SELECT DATE(submitted_at) AS activity_date, COUNT(*) AS count
                FROM public.billings
                WHERE submitted_at IS NOT NULL AND submitted_at >= NOW() - %s::interval
                GROUP BY DATE(submitted_at)
                ORDER BY activity_date DESC
                LIMIT 7;
            """, (interval,))
        except Exception as e:
            raise wrap_error("Failed to fetch dashboard data", e, timeframe=timeframe)

        aging = {k: to_amount(ar.get(k)) for k in ("aging_0_30", "aging_31_60", "aging_61_90", "aging_90_plus")}
        return {
            "summary": {
                "total_claims": to_int(claims.get("total_claims")),
                "total_billed": to_amount(claims.get("total_billed")),
                "total_collected": to_amount(claims.get("total_collected")),
                "total_ar": to_amount(sum(aging.values())),
                "collection_rate": collection_rate(claims.get("total_collected"), claims.get("total_billed")),
                "denial_rate": denial_rate(claims.get("denied_claims"), claims.get("total_claims")),
                "avg_claim_amount": to_amount(claims.get("avg_claim_amount")),
            },
            "claims_breakdown": {
                "draft": to_int(claims.get("draft_claims")),
                "submitted": to_int(claims.get("submitted_claims")),
                "paid": to_int(claims.get("paid_claims")),
                "denied": to_int(claims.get("denied_claims")),
            },
            "ar_aging": aging,
            "recent_activity": [
                {"activity_type": "claim_submitted", "activity_date": str(a.get("activity_date")), "count": to_int(a.get("count"))}
                for a in activity
            ],
            "timeframe": timeframe,
            "generated_at": now_iso(),
        }

    def get_analytics(self, timeframe: str = "90d") -> Dict[str, Any]:
        interval = timeframe_interval(timeframe)
        try:
            kpis = self.db.query_one("""
                SELECT
                    COUNT(*) AS total_claims,
                    SUM(CASE WHEN status = %s THEN 1 ELSE 0 END) AS denied_claims,
                    SUM(total_amount) AS total_billed,
                    SUM(paid_amount) AS total_collected,
                    AVG(CASE WHEN status = ANY(%s) THEN CURRENT_DATE - service_date END) AS avg_days_in_ar
                FROM public.billings
                WHERE created_at >= NOW() - %s::interval;
            """, (_DENIED, list(OUTSTANDING_STATUSES), interval)) or {}
            monthly = self.db.query_all("""
                SELECT
                    TO_CHAR(DATE_TRUNC('month', created_at), 'YYYY-MM') AS month,
                    COUNT(*) AS claims,
                    SUM(total_amount) AS billed,
                    SUM(paid_amount) AS collected
                FROM public.billings
                WHERE created_at >= NOW() - %s::interval
                GROUP BY 1
                ORDER BY 1;
            """, (interval,))
        except Exception as e:
            raise wrap_error("Failed to fetch RCM analytics", e, timeframe=timeframe)

        return {
            "kpis": {
                "total_claims": to_int(kpis.get("total_claims")),
                "total_billed": to_amount(kpis.get("total_billed")),
                "total_collected": to_amount(kpis.get("total_collected")),
                "collection_rate": collection_rate(kpis.get("total_collected"), kpis.get("total_billed")),
                "denial_rate": denial_rate(kpis.get("denied_claims"), kpis.get("total_claims")),
                "avg_days_in_ar": to_amount(kpis.get("avg_days_in_ar")),
            },
            "monthly_trend": [
                {
                    "month": m.get("month"),
                    "claims": to_int(m.get("claims")),
                    "billed": to_amount(m.get("billed")),
                    "collected": to_amount(m.get("collected")),
                    "collection_rate": collection_rate(m.get("collected"), m.get("billed")),
                }
                for m in monthly
            ],
            "timeframe": timeframe,
            "generated_at": now_iso(),
        }

    # -----------------------
    # Claims
    def get_claims(self, status: str = "all", search: str = "", date_from: Optional[str] = None, date_to: Optional[str] = None, page: int = 1, limit: int = 10) -> Dict[str, Any]:
        where = ["1=1"]
        params: List[Any] = []
        if status and status != "all":
            where.append("b.status = %s")
            params.append(status)
        if search:
            where.append("(p.first_name ILIKE %s OR p.last_name ILIKE %s OR b.procedure_code ILIKE %s OR b.id ILIKE %s)")
            term = f"%{search}%"
            params.extend([term, term, term, term])
        if date_from:
            where.append("b.service_date >= %s")
            params.append(date_from)
        if date_to:
            where.append("b.service_date <= %s")
            params.append(date_to)
        where_clause = " AND ".join(where)

        try:
            result = self.db.query_page(f"""
                SELECT
                    b.id, b.patient_id, CONCAT(p.first_name, ' ', p.last_name) AS patient_name,
                    b.payer_id, b.procedure_code, b.total_amount, b.paid_amount, b.service_date,
                    b.status, b.created_at, b.updated_at,
                    CURRENT_DATE - b.service_date AS days_in_ar
                FROM public.billings b
                LEFT JOIN public.patients p ON b.patient_id = p.id
                WHERE {where_clause}
                ORDER BY b.created_at DESC
            """, f"""
                SELECT COUNT(*) AS total
                FROM public.billings b
                LEFT JOIN public.patients p ON b.patient_id = p.id
                WHERE {where_clause}
            """, params, page, limit)
        except Exception as e:
            raise wrap_error("Failed to fetch claims", e, options={"status": status, "search": search, "date_from": date_from, "date_to": date_to})

        claims = []
        for c in result["data"]:
            days = to_int(c.get("days_in_ar"))
            claims.append(dict(
                c,
                total_amount=to_amount(c.get("total_amount")),
                paid_amount=to_amount(c.get("paid_amount")),
                aging_bucket=aging_bucket(days),
                collectability_score=collectability_score(days),
                recommendations=claim_recommendations(c),
            ))
        return {
            "claims": claims,
            "pagination": result["pagination"],
            "filters": {"status": status, "search": search, "date_from": date_from, "date_to": date_to},
        }

    def get_claim_stats(self, timeframe: str = "30d") -> Dict[str, Any]:
        try:
            rows = self.db.query_all("""
                SELECT status, COUNT(*) AS count, SUM(total_amount) AS amount
                FROM public.billings
                WHERE created_at >= NOW() - %s::interval
                GROUP BY status;
            """, (timeframe_interval(timeframe),))
        except Exception as e:
            raise wrap_error("Failed to fetch claim statistics", e, timeframe=timeframe)

        by_status = {s.value: {"count": 0, "amount": 0.0} for s in ClaimStatus}
        for r in rows:
            by_status[r["status"]] = {"count": to_int(r.get("count")), "amount": to_amount(r.get("amount"))}
        total = sum(v["count"] for v in by_status.values())
        return {
            "total_claims": total,
            "total_amount": to_amount(sum(v["amount"] for v in by_status.values())),
            "by_status": by_status,
            "denial_rate": denial_rate(by_status[_DENIED]["count"], total),
            "timeframe": timeframe,
        }

    def get_claim_by_id(self, claim_id: str) -> Dict[str, Any]:
        try:
            claim = self.db.query_one("""
                SELECT
                    b.*,
                    CONCAT(p.first_name, ' ', p.last_name) AS patient_name,
                    p.email AS patient_email,
                    p.phone AS patient_phone,
                    CURRENT_DATE - b.service_date AS days_in_ar
                FROM public.billings b
                LEFT JOIN public.patients p ON b.patient_id = p.id
                WHERE b.id = %s;
            """, (claim_id,))
            if not claim:
                raise NotFoundError("Claim not found", {"claim_id": claim_id})
        except Exception as e:
            raise wrap_error("Failed to fetch claim details", e, claim_id=claim_id)
        days = to_int(claim.get("days_in_ar"))
        return dict(
            claim,
            total_amount=to_amount(claim.get("total_amount")),
            paid_amount=to_amount(claim.get("paid_amount")),
            aging_bucket=aging_bucket(days),
            recommendations=claim_recommendations(claim),
        )

    def submit_claim(self, claim_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        try:
            existing = self.db.query_one("SELECT id, status FROM public.billings WHERE id = %s;", (claim_id,))
            if not existing:
                raise NotFoundError("Claim not found", {"claim_id": claim_id})
            if existing["status"] not in SUBMITTABLE_STATUSES:
                raise BadRequestError(
                    f"Claim cannot be submitted from status '{existing['status']}'",
                    {"claim_id": claim_id, "status": existing["status"]},
                )
            updated = self.db.execute("""
                UPDATE public.billings
                SET status = %s, submitted_at = now(), updated_at = now()
                WHERE id = %s
                RETURNING id, status, submitted_at;
            """, (ClaimStatus.submitted.value, claim_id))
        except Exception as e:
            raise wrap_error("Failed to submit claim", e, claim_id=claim_id)
        log.info("claim %s submitted (was %s)", claim_id, existing["status"])
        self.db.audit_log("billings", claim_id, "SUBMIT", {"status": existing["status"]}, {"status": ClaimStatus.submitted.value}, user_id)
        return updated or {"id": claim_id, "status": ClaimStatus.submitted.value}

    def bulk_submit_claims(self, claim_ids: List[str], user_id: Optional[str] = None) -> Dict[str, Any]:
        results = []
        for claim_id in claim_ids:
            try:
                self.submit_claim(claim_id, user_id)
                results.append({"claim_id": claim_id, "success": True})
            except Exception as e:
                log.warning("bulk submit: claim %s failed: %s", claim_id, e)
                results.append({"claim_id": claim_id, "success": False, "error": getattr(e, "message", str(e))})
        submitted = sum(1 for r in results if r["success"])
        return {
            "submitted": submitted,
            "failed": len(results) - submitted,
            "results": results,
        }

    def update_claim_status(self, claim_id: str, status: str, notes: Optional[str] = None, user_id: Optional[str] = None) -> Dict[str, Any]:
        # any enumerated status is accepted regardless of the current one
        try:
            with self.db.transaction() as cur:
                cur.execute("SELECT id, status FROM public.billings WHERE id = %s FOR UPDATE;", (claim_id,))
                existing = cur.fetchone()
                if not existing:
                    raise NotFoundError("Claim not found", {"claim_id": claim_id})
                cur.execute("""
                    UPDATE public.billings
                    SET status = %s, notes = COALESCE(%s, notes), updated_at = now()
                    WHERE id = %s
                    RETURNING *;
                """, (status, notes, claim_id))
                updated = cur.fetchone()
        except Exception as e:
            raise wrap_error("Failed to update claim status", e, claim_id=claim_id, update_data={"status": status, "notes": notes})
        self.db.audit_log("billings", claim_id, "STATUS_UPDATE", {"status": existing["status"]}, {"status": status, "notes": notes}, user_id)
        return dict(updated or {"id": claim_id}, previous_status=existing["status"])

    # -----------------------
    # A/R aging
    def get_ar_aging_report(self, include_zero_balance: bool = False, payer_id: Optional[str] = None) -> Dict[str, Any]:
        where = ["b.status = ANY(%s)"]
        params: List[Any] = [list(OUTSTANDING_STATUSES)]
        if not include_zero_balance:
            where.append("b.total_amount - COALESCE(b.paid_amount, 0) > 0")
        if payer_id:
            where.append("b.payer_id = %s")
            params.append(payer_id)
        try:
            rows = self.db.query_all(f"""
                SELECT
                    b.id, b.patient_id, CONCAT(p.first_name, ' ', p.last_name) AS patient_name,
                    b.payer_id, b.total_amount - COALESCE(b.paid_amount, 0) AS balance,
                    b.service_date, b.status,
                    CURRENT_DATE - b.service_date AS days_outstanding
                FROM public.billings b
                LEFT JOIN public.patients p ON b.patient_id = p.id
                WHERE {" AND ".join(where)}
                ORDER BY days_outstanding DESC, balance DESC;
            """, params)
        except Exception as e:
            raise wrap_error("Failed to generate A/R aging report", e, options={"include_zero_balance": include_zero_balance, "payer_id": payer_id})

        buckets: Dict[str, Dict[str, Any]] = {b: {"count": 0, "amount": 0.0, "claims": []} for b in AGING_BUCKETS}
        total_amount = 0.0
        total_days = 0
        for r in rows:
            days = to_int(r.get("days_outstanding"))
            balance = to_amount(r.get("balance"))
            bucket = buckets[aging_bucket(days)]
            bucket["count"] += 1
            bucket["amount"] = to_amount(bucket["amount"] + balance)
            bucket["claims"].append(dict(r, balance=balance, collectability_score=collectability_score(days)))
            total_amount += balance
            total_days += days
        return {
            "aging_buckets": buckets,
            "totals": {
                "total_claims": len(rows),
                "total_amount": to_amount(total_amount),
                "avg_days_outstanding": to_amount(total_days / len(rows)) if rows else 0.0,
            },
            "filters": {"include_zero_balance": include_zero_balance, "payer_id": payer_id},
            "generated_at": now_iso(),
        }

    # -----------------------
    # Denials
    def get_denial_analytics(self, timeframe: str = "30d") -> Dict[str, Any]:
        interval = timeframe_interval(timeframe)
        try:
            summary = self.db.query_one("""
                SELECT COUNT(*) AS total_denials, SUM(total_amount) AS denied_amount, AVG(total_amount) AS avg_denial_amount
                FROM public.billings
                WHERE status = %s AND created_at >= NOW() - %s::interval;
            """, (_DENIED, interval)) or {}
            reasons = self.db.query_all("""
                SELECT denial_reason, COUNT(*) AS count, SUM(total_amount) AS amount
                FROM public.billings
                WHERE status = %s AND denial_reason IS NOT NULL AND created_at >= NOW() - %s::interval
                GROUP BY denial_reason
                ORDER BY count DESC
                LIMIT 10;
            """, (_DENIED, interval))
        except Exception as e:
            raise wrap_error("Failed to fetch denial analytics", e, timeframe=timeframe)
        return {
            "summary": {
                "total_denials": to_int(summary.get("total_denials")),
                "denied_amount": to_amount(summary.get("denied_amount")),
                "avg_denial_amount": to_amount(summary.get("avg_denial_amount")),
            },
            "denial_reasons": [
                {"denial_reason": r.get("denial_reason"), "count": to_int(r.get("count")), "amount": to_amount(r.get("amount"))}
                for r in reasons
            ],
            "trends": self.get_denial_trends(timeframe)["trends"],
            "timeframe": timeframe,
            "generated_at": now_iso(),
        }

    def get_denial_trends(self, timeframe: str = "30d") -> Dict[str, Any]:
        try:
            rows = self.db.query_all("""
                SELECT DATE(updated_at) AS denial_date, COUNT(*) AS count, SUM(total_amount) AS amount
                FROM public.billings
                WHERE status = %s AND updated_at >= NOW() - %s::interval
                GROUP BY DATE(updated_at)
                ORDER BY denial_date DESC
                LIMIT 30;
            """, (_DENIED, timeframe_interval(timeframe)))
        except Exception as e:
            raise wrap_error("Failed to fetch denial trends", e, timeframe=timeframe)
        return {
            "trends": [
                {"denial_date": str(r.get("denial_date")), "count": to_int(r.get("count")), "amount": to_amount(r.get("amount"))}
                for r in rows
            ],
            "timeframe": timeframe,
        }

    # -----------------------
    # Collections
    def get_collections_workflow(self, status: str = "all", priority: str = "all", aging: str = "all", page: int = 1, limit: int = 10) -> Dict[str, Any]:
        where = ["pa.total_balance > 0"]
        params: List[Any] = []
        if status != "all":
            where.append("pa.collection_status = %s")
            params.append(status)
        if priority != "all":
            where.append("pa.priority = %s")
            params.append(priority)
        if aging != "all":
            if aging not in AGING_BUCKET_DAYS:
                raise BadRequestError(f"Unknown aging bucket '{aging}'", {"allowed": ["all", *AGING_BUCKETS]})
            low, high = AGING_BUCKET_DAYS[aging]
            # accounts holding at least one open claim in the bucket
            bucket_sql = """EXISTS (
                SELECT 1 FROM public.billings b
                WHERE b.patient_id = pa.patient_id
                  AND b.status = ANY(%s)
                  AND b.total_amount - COALESCE(b.paid_amount, 0) > 0
                  AND CURRENT_DATE - b.service_date >= %s"""
            params.extend([list(OUTSTANDING_STATUSES), low])
            if high is not None:
                bucket_sql += "\n                  AND CURRENT_DATE - b.service_date <= %s"
                params.append(high)
            where.append(bucket_sql + ")")
        where_clause = " AND ".join(where)

        try:
            result = self.db.query_page(f"""
                SELECT
                    pa.id, pa.patient_id, CONCAT(p.first_name, ' ', p.last_name) AS patient_name,
                    pa.total_balance, pa.aging_0_30, pa.aging_31_60, pa.aging_61_90, pa.aging_91_plus,
                    pa.last_payment_date, pa.last_statement_date, pa.collection_status,
                    pa.priority, pa.assigned_collector, pa.contact_attempts
                FROM public.patient_accounts pa
                LEFT JOIN public.patients p ON pa.patient_id = p.id
                WHERE {where_clause}
                ORDER BY
                    CASE pa.priority WHEN 'urgent' THEN 1 WHEN 'high' THEN 2 WHEN 'medium' THEN 3 ELSE 4 END,
                    pa.aging_91_plus DESC,
                    pa.total_balance DESC
            """, f"SELECT COUNT(*) AS total FROM public.patient_accounts pa WHERE {where_clause}", params, page, limit)
        except Exception as e:
            raise wrap_error("Failed to fetch collections workflow", e, options={"status": status, "priority": priority, "aging": aging})

        accounts = [
            dict(a, **{k: to_amount(a.get(k)) for k in ("total_balance", "aging_0_30", "aging_31_60", "aging_61_90", "aging_91_plus")})
            for a in result["data"]
        ]
        return {
            "accounts": accounts,
            "pagination": result["pagination"],
            "filters": {"status": status, "priority": priority, "aging": aging},
        }

    def update_collection_status(self, account_id: str, status: Optional[str] = None, priority: Optional[str] = None, assigned_collector: Optional[str] = None, notes: Optional[str] = None, user_id: Optional[str] = None) -> Dict[str, Any]:
        try:
            existing = self.db.query_one("SELECT * FROM public.patient_accounts WHERE id = %s;", (account_id,))
            if not existing:
                raise NotFoundError("Patient account not found", {"account_id": account_id})
            with self.db.transaction() as cur:
                cur.execute("""
                    UPDATE public.patient_accounts
                    SET collection_status = COALESCE(%s, collection_status),
                        priority = COALESCE(%s, priority),
                        assigned_collector = COALESCE(%s, assigned_collector),
                        updated_at = now()
                    WHERE id = %s
                    RETURNING id, collection_status, priority, assigned_collector;
                """, (status, priority, assigned_collector, account_id))
                updated = cur.fetchone()
                if status or notes:
                    cur.execute("""
                        INSERT INTO public.collection_activities (patient_id, activity_type, description, performed_by, notes, created_at)
                        VALUES (%s, 'status_update', %s, %s, %s, now());
                    """, (
                        existing["patient_id"],
                        f"Collection status updated to {status or existing.get('collection_status')}",
                        user_id,
                        notes,
                    ))
        except Exception as e:
            raise wrap_error("Failed to update collection status", e, account_id=account_id)
        self.db.audit_log(
            "patient_accounts", account_id, "UPDATE",
            {k: existing.get(k) for k in ("collection_status", "priority", "assigned_collector")},
            {"collection_status": status, "priority": priority, "assigned_collector": assigned_collector},
            user_id,
        )
        return dict(updated) if updated else {"id": account_id}
