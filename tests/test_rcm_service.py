"""Service-level tests for claims, A/R aging, denials and collections."""

from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from errors import BadRequestError, DataAccessError, NotFoundError
from rcm_service import RCMService


# ---------------------------------------------------------------------------
# Claim status updates
# ---------------------------------------------------------------------------

class TestUpdateClaimStatus:
    def test_any_transition_is_allowed(self, fake_db: MagicMock, cursor: MagicMock) -> None:
        cursor.fetchone.side_effect = [{"id": "CLM-1", "status": "paid"}, {"id": "CLM-1", "status": "draft"}]

        result = RCMService(db=fake_db).update_claim_status("CLM-1", "draft", user_id="u-1")

        assert result["status"] == "draft"
        assert result["previous_status"] == "paid"
        fake_db.audit_log.assert_called_once_with(
            "billings", "CLM-1", "STATUS_UPDATE", {"status": "paid"}, {"status": "draft", "notes": None}, "u-1",
        )

    def test_previous_status_read_under_row_lock(self, fake_db: MagicMock, cursor: MagicMock) -> None:
        cursor.fetchone.side_effect = [{"id": "CLM-1", "status": "submitted"}, {"id": "CLM-1", "status": "denied"}]

        RCMService(db=fake_db).update_claim_status("CLM-1", "denied")

        fake_db.query_one.assert_not_called()
        fake_db.execute.assert_not_called()
        read_sql, update_sql = [c[0][0] for c in cursor.execute.call_args_list]
        assert "FOR UPDATE" in read_sql
        assert "UPDATE public.billings" in update_sql

    def test_missing_claim(self, fake_db: MagicMock, cursor: MagicMock) -> None:
        cursor.fetchone.return_value = None
        with pytest.raises(NotFoundError):
            RCMService(db=fake_db).update_claim_status("CLM-404", "denied")
        assert cursor.execute.call_count == 1
        fake_db.audit_log.assert_not_called()

    def test_store_failure_is_wrapped(self, fake_db: MagicMock) -> None:
        fake_db.transaction.side_effect = RuntimeError("db down")
        with pytest.raises(DataAccessError) as exc_info:
            RCMService(db=fake_db).update_claim_status("CLM-1", "denied", notes="late")
        details = exc_info.value.details
        assert details["original_error"] == "db down"
        assert details["claim_id"] == "CLM-1"
        assert details["update_data"] == {"status": "denied", "notes": "late"}


# ---------------------------------------------------------------------------
# Submission
# ---------------------------------------------------------------------------

class TestSubmitClaims:
    def test_submit_draft(self, fake_db: MagicMock) -> None:
        fake_db.query_one.return_value = {"id": "CLM-1", "status": "draft"}
        fake_db.execute.return_value = {"id": "CLM-1", "status": "submitted", "submitted_at": None}

        result = RCMService(db=fake_db).submit_claim("CLM-1")

        assert result["status"] == "submitted"
        sql, params = fake_db.execute.call_args[0]
        assert params == ("submitted", "CLM-1")

    def test_paid_claim_cannot_be_submitted(self, fake_db: MagicMock) -> None:
        fake_db.query_one.return_value = {"id": "CLM-1", "status": "paid"}
        with pytest.raises(BadRequestError):
            RCMService(db=fake_db).submit_claim("CLM-1")
        fake_db.execute.assert_not_called()

    def test_bulk_submit_reports_each_claim(self, fake_db: MagicMock) -> None:
        statuses = {"CLM-1": "draft", "CLM-2": "paid", "CLM-3": "rejected"}
        fake_db.query_one.side_effect = lambda sql, params: (
            {"id": params[0], "status": statuses[params[0]]} if params[0] in statuses else None
        )
        result = RCMService(db=fake_db).bulk_submit_claims(["CLM-1", "CLM-2", "CLM-3", "CLM-4"])

        assert result["submitted"] == 2
        assert result["failed"] == 2
        outcome = {r["claim_id"]: r["success"] for r in result["results"]}
        assert outcome == {"CLM-1": True, "CLM-2": False, "CLM-3": True, "CLM-4": False}
        assert result["results"][3]["error"] == "Claim not found"


# ---------------------------------------------------------------------------
# Listing and detail
# ---------------------------------------------------------------------------

class TestClaimQueries:
    def test_claims_are_annotated(self, fake_db: MagicMock) -> None:
        fake_db.query_page.return_value = {
            "data": [{"id": "CLM-1", "status": "submitted", "total_amount": Decimal("100.50"), "paid_amount": None, "days_in_ar": 95}],
            "pagination": {"total": 1},
        }
        result = RCMService(db=fake_db).get_claims(status="submitted", search="smith")

        claim = result["claims"][0]
        assert claim["total_amount"] == 100.5
        assert claim["paid_amount"] == 0.0
        assert claim["aging_bucket"] == "91-120"
        assert claim["collectability_score"] == 50
        assert "Escalate aged claim to collections review" in claim["recommendations"]
        params = fake_db.query_page.call_args[0][2]
        assert params == ["submitted", "%smith%", "%smith%", "%smith%", "%smith%"]

    def test_claims_failure_carries_filters(self, fake_db: MagicMock) -> None:
        fake_db.query_page.side_effect = RuntimeError("syntax error")
        with pytest.raises(DataAccessError) as exc_info:
            RCMService(db=fake_db).get_claims(status="paid")
        assert exc_info.value.details["options"]["status"] == "paid"

    def test_claim_detail_not_found(self, fake_db: MagicMock) -> None:
        with pytest.raises(NotFoundError) as exc_info:
            RCMService(db=fake_db).get_claim_by_id("CLM-404")
        assert exc_info.value.details == {"claim_id": "CLM-404"}

    def test_claim_stats_fills_every_status(self, fake_db: MagicMock) -> None:
        fake_db.query_all.return_value = [
            {"status": "paid", "count": 3, "amount": Decimal("300")},
            {"status": "denied", "count": 1, "amount": Decimal("50")},
        ]
        stats = RCMService(db=fake_db).get_claim_stats()
        assert stats["total_claims"] == 4
        assert stats["total_amount"] == 350.0
        assert stats["by_status"]["draft"] == {"count": 0, "amount": 0.0}
        assert stats["denial_rate"] == 25.0


# ---------------------------------------------------------------------------
# Dashboard, A/R aging, denials, collections
# ---------------------------------------------------------------------------

class TestReporting:
    def test_dashboard_handles_empty_store(self, fake_db: MagicMock) -> None:
        data = RCMService(db=fake_db).get_dashboard_data("7d")
        assert data["summary"]["total_claims"] == 0
        assert data["summary"]["collection_rate"] == 0.0
        assert data["ar_aging"]["aging_90_plus"] == 0.0
        assert fake_db.query_one.call_args_list[0][0][1] == ("7 days",)

    def test_unknown_timeframe_falls_back_to_thirty_days(self, fake_db: MagicMock) -> None:
        RCMService(db=fake_db).get_denial_trends("5y")
        assert fake_db.query_all.call_args[0][1] == ("denied", "30 days")

    def test_ar_aging_groups_by_bucket(self, fake_db: MagicMock) -> None:
        fake_db.query_all.return_value = [
            {"id": "A", "balance": Decimal("100"), "days_outstanding": 10},
            {"id": "B", "balance": Decimal("200"), "days_outstanding": 45},
            {"id": "C", "balance": Decimal("50.25"), "days_outstanding": 130},
            {"id": "D", "balance": Decimal("25"), "days_outstanding": 20},
        ]
        report = RCMService(db=fake_db).get_ar_aging_report()

        buckets = report["aging_buckets"]
        assert buckets["0-30"]["count"] == 2
        assert buckets["0-30"]["amount"] == 125.0
        assert buckets["31-60"]["count"] == 1
        assert buckets["61-90"]["count"] == 0
        assert buckets["120+"]["amount"] == 50.25
        assert report["totals"] == {"total_claims": 4, "total_amount": 375.25, "avg_days_outstanding": 51.25}

    def test_denial_analytics(self, fake_db: MagicMock) -> None:
        fake_db.query_one.return_value = {"total_denials": 2, "denied_amount": Decimal("400"), "avg_denial_amount": Decimal("200")}
        fake_db.query_all.side_effect = [
            [{"denial_reason": "CO-50", "count": 2, "amount": Decimal("400")}],
            [{"denial_date": "2026-10-01", "count": 2, "amount": Decimal("400")}],
        ]
        data = RCMService(db=fake_db).get_denial_analytics()
        assert data["summary"]["total_denials"] == 2
        assert data["denial_reasons"][0]["denial_reason"] == "CO-50"
        assert data["trends"][0]["count"] == 2

    def test_collection_update_logs_activity(self, fake_db: MagicMock, cursor: MagicMock) -> None:
        fake_db.query_one.return_value = {"id": "ACC-1", "patient_id": "P-1", "collection_status": "active", "priority": "low", "assigned_collector": None}
        cursor.fetchone.return_value = {"id": "ACC-1", "collection_status": "payment_plan", "priority": "high", "assigned_collector": "jo"}

        result = RCMService(db=fake_db).update_collection_status("ACC-1", status="payment_plan", priority="high", assigned_collector="jo")

        assert result["collection_status"] == "payment_plan"
        assert cursor.execute.call_count == 2
        fake_db.audit_log.assert_called_once()

    @pytest.mark.parametrize("bucket, bounds", [("0-30", [0, 30]), ("91-120", [91, 120]), ("120+", [121])])
    def test_collections_filter_uses_aging_buckets(self, fake_db: MagicMock, bucket: str, bounds: list) -> None:
        RCMService(db=fake_db).get_collections_workflow(priority="high", aging=bucket)

        sql, count_sql, params = fake_db.query_page.call_args[0][:3]
        assert params == ["high", ["submitted", "accepted", "denied", "appealed"], *bounds]
        assert "CURRENT_DATE - b.service_date >= %s" in count_sql
        assert ("CURRENT_DATE - b.service_date <= %s" in sql) is (len(bounds) == 2)

    def test_collections_rejects_unknown_bucket(self, fake_db: MagicMock) -> None:
        with pytest.raises(BadRequestError) as exc_info:
            RCMService(db=fake_db).get_collections_workflow(aging="90+")
        assert "120+" in exc_info.value.details["allowed"]
        fake_db.query_page.assert_not_called()

    def test_collection_update_missing_account(self, fake_db: MagicMock) -> None:
        with pytest.raises(NotFoundError):
            RCMService(db=fake_db).update_collection_status("ACC-404", status="closed")
