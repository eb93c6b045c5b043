"""Tests for patient statement generation and delivery."""

from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from errors import BadRequestError, DataAccessError, NotFoundError
from statements import StatementService

OPEN_LINES = [
    {"claim_id": "CLM-1", "service_date": "2026-08-01", "procedure_code": "99213", "total_amount": Decimal("200"), "paid_amount": Decimal("50"), "balance": Decimal("150")},
    {"claim_id": "CLM-2", "service_date": "2026-08-15", "procedure_code": "99214", "total_amount": Decimal("80.25"), "paid_amount": Decimal("0"), "balance": Decimal("80.25")},
]


# ---------------------------------------------------------------------------
# generate_statement
# ---------------------------------------------------------------------------

class TestGenerateStatement:
    def test_statement_and_account_written_together(self, fake_db: MagicMock, cursor: MagicMock) -> None:
        fake_db.query_all.return_value = OPEN_LINES
        cursor.fetchone.return_value = {"id": 11, "patient_id": "P-1", "statement_date": "2026-10-18", "total_amount": Decimal("230.25"), "status": "generated"}

        statement = StatementService(db=fake_db).generate_statement("P-1", user_id="u-1")

        assert statement["id"] == 11
        assert statement["total_amount"] == 230.25
        assert [l["balance"] for l in statement["line_items"]] == [150.0, 80.25]
        fake_db.transaction.assert_called_once()
        fake_db.execute.assert_not_called()
        insert_sql, insert_params = cursor.execute.call_args_list[0][0]
        assert "INSERT INTO public.patient_statements" in insert_sql
        assert insert_params == ("P-1", 230.25, 2, "u-1")
        assert "UPDATE public.patient_accounts" in cursor.execute.call_args_list[1][0][0]

    def test_account_update_failure_is_wrapped(self, fake_db: MagicMock, cursor: MagicMock) -> None:
        fake_db.query_all.return_value = OPEN_LINES
        cursor.execute.side_effect = [None, RuntimeError("deadlock detected")]

        with pytest.raises(DataAccessError) as exc_info:
            StatementService(db=fake_db).generate_statement("P-1")

        assert exc_info.value.details == {"original_error": "deadlock detected", "patient_id": "P-1"}
        # both writes ran on the transaction cursor, so the insert rolls back with it
        assert cursor.execute.call_count == 2
        fake_db.execute.assert_not_called()

    def test_no_balance(self, fake_db: MagicMock) -> None:
        with pytest.raises(BadRequestError):
            StatementService(db=fake_db).generate_statement("P-2")
        fake_db.transaction.assert_not_called()


# ---------------------------------------------------------------------------
# send_statement
# ---------------------------------------------------------------------------

class TestSendStatement:
    def test_generated_statement_is_sent(self, fake_db: MagicMock) -> None:
        fake_db.query_one.return_value = {"id": 3, "status": "generated"}
        fake_db.execute.return_value = {"id": 3, "status": "sent", "delivery_method": "mail", "sent_at": None}

        result = StatementService(db=fake_db).send_statement("3", "mail", user_id="u-1")

        assert result["status"] == "sent"
        assert result["queued_at"].endswith("Z")
        sql, params = fake_db.execute.call_args[0]
        assert "status = 'generated'" in sql
        assert params == ("mail", "3")
        fake_db.audit_log.assert_called_once()

    def test_already_sent_is_rejected(self, fake_db: MagicMock) -> None:
        fake_db.query_one.return_value = {"id": 3, "status": "sent"}
        with pytest.raises(BadRequestError) as exc_info:
            StatementService(db=fake_db).send_statement("3")
        assert exc_info.value.details["status"] == "sent"
        fake_db.execute.assert_not_called()
        fake_db.audit_log.assert_not_called()

    def test_concurrent_send_is_rejected(self, fake_db: MagicMock) -> None:
        fake_db.query_one.return_value = {"id": 3, "status": "generated"}
        fake_db.execute.return_value = None
        with pytest.raises(BadRequestError):
            StatementService(db=fake_db).send_statement("3")
        fake_db.audit_log.assert_not_called()

    def test_missing_statement(self, fake_db: MagicMock) -> None:
        with pytest.raises(NotFoundError):
            StatementService(db=fake_db).send_statement("404")

    def test_unsupported_delivery_method(self, fake_db: MagicMock) -> None:
        with pytest.raises(BadRequestError):
            StatementService(db=fake_db).send_statement("3", "fax")
        fake_db.query_one.assert_not_called()
