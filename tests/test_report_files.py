from __future__ import annotations

from datetime import UTC, date, datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select, update

from reportflow.core.config import settings
from reportflow.core.db import SessionLocal
from reportflow.core.errors import (
    FileTooLarge,
    InvalidTransition,
    UnsupportedFileType,
    ValidationFailed,
)
from reportflow.core.storage import get_storage
from reportflow.modules.extraction import service as extraction_service
from reportflow.modules.extraction.service import extract_report_file
from reportflow.modules.identity.models import User, UserRole
from reportflow.modules.identity.service import create_user
from reportflow.modules.reports.models import Report, ReportFile, ReportFileStatus, ReportStatus
from reportflow.modules.reports.service import (
    add_report_file,
    create_report,
    get_report_for_user,
    list_reports_for_user,
    remove_report_file,
)
from reportflow.modules.workflow.lifecycle import Submit, apply_action


def _employee(session, email="employee@example.com"):
    return create_user(
        session, email=email, password="pw", role=UserRole.USER, full_name="Employee"
    )


def test_first_upload_moves_report_to_processing_and_extraction_sets_totals():
    with SessionLocal() as session:
        employee = _employee(session)
        report = create_report(session, user=employee, report_date=date(2026, 1, 31))
        assert report.status == ReportStatus.PENDING
        assert report.filename == ""

        report_file = add_report_file(
            session,
            report=report,
            user=employee,
            filename="january.csv",
            content_type="text/csv",
            body=b"Date,Total Amount Charged\n2026-01-02,100.50\n2026-01-03,200\n",
        )
        session.refresh(report)
        assert report.status == ReportStatus.PROCESSING
        assert report.filename == "january.csv"
        assert report_file.status == ReportFileStatus.UPLOADING
        assert report_file.storage_key.startswith(f"reports/{report.id}/files/")
        assert report.file_urls == [report_file.storage_key]

        extract_report_file(report_file_id=str(report_file.id))
        session.expire_all()

        refreshed = session.scalar(select(ReportFile).where(ReportFile.id == report_file.id))
        assert refreshed.status == ReportFileStatus.COMPLETED
        assert refreshed.matched_column == "Total Amount Charged"
        assert refreshed.amount_count == 2
        assert refreshed.total_amount == Decimal("300.50")

        report_row = session.scalar(select(Report).where(Report.id == report.id))
        assert report_row.total_amount == Decimal("300.50")


def test_file_without_amount_column_is_recorded_as_error():
    with SessionLocal() as session:
        employee = _employee(session)
        report = create_report(session, user=employee, report_date=date(2026, 1, 31))
        report_file = add_report_file(
            session,
            report=report,
            user=employee,
            filename="guests.csv",
            content_type="text/csv",
            body=b"Guest,City\nA,Pune\n",
        )

        extract_report_file(report_file_id=str(report_file.id))
        session.expire_all()

        refreshed = session.scalar(select(ReportFile).where(ReportFile.id == report_file.id))
        assert refreshed.status == ReportFileStatus.ERROR
        assert refreshed.error_code == "NO_AMOUNT_COLUMN_FOUND"
        assert "guests.csv" in refreshed.error_message
        assert refreshed.total_amount == Decimal("0.00")


def test_malformed_html_is_recorded_as_error_without_affecting_siblings():
    with SessionLocal() as session:
        employee = _employee(session)
        report = create_report(session, user=employee, report_date=date(2026, 1, 31))
        bad = add_report_file(
            session,
            report=report,
            user=employee,
            filename="broken.html",
            content_type="text/html",
            body=b"plain text pretending to be html",
        )
        good = add_report_file(
            session,
            report=report,
            user=employee,
            filename="ok.csv",
            content_type="text/csv",
            body=b"Item,Amount\nA,40\n",
        )

        extract_report_file(report_file_id=str(bad.id))
        extract_report_file(report_file_id=str(good.id))
        session.expire_all()

        bad_row = session.scalar(select(ReportFile).where(ReportFile.id == bad.id))
        good_row = session.scalar(select(ReportFile).where(ReportFile.id == good.id))
        assert bad_row.status == ReportFileStatus.ERROR
        assert bad_row.error_code == "MALFORMED_DOCUMENT"
        assert good_row.status == ReportFileStatus.COMPLETED

        report_row = session.scalar(select(Report).where(Report.id == report.id))
        assert report_row.total_amount == Decimal("40.00")


def test_zero_amount_column_completes_with_warning():
    with SessionLocal() as session:
        employee = _employee(session)
        report = create_report(session, user=employee, report_date=date(2026, 1, 31))
        report_file = add_report_file(
            session,
            report=report,
            user=employee,
            filename="zero.csv",
            content_type="text/csv",
            body=b"Item,Amount\nA,0\n",
        )

        extract_report_file(report_file_id=str(report_file.id))
        session.expire_all()

        refreshed = session.scalar(select(ReportFile).where(ReportFile.id == report_file.id))
        assert refreshed.status == ReportFileStatus.COMPLETED
        assert refreshed.total_amount == Decimal("0.00")
        assert refreshed.warning and "zero.csv" in refreshed.warning


def test_extract_report_file_is_idempotent_when_already_completed():
    with SessionLocal() as session:
        employee = _employee(session)
        report = create_report(session, user=employee, report_date=date(2026, 1, 31))
        report_file = add_report_file(
            session,
            report=report,
            user=employee,
            filename="a.csv",
            content_type="text/csv",
            body=b"Amount\n10\n",
        )

        extract_report_file(report_file_id=str(report_file.id))
        extract_report_file(report_file_id=str(report_file.id))
        session.expire_all()

        refreshed = session.scalar(select(ReportFile).where(ReportFile.id == report_file.id))
        assert refreshed.status == ReportFileStatus.COMPLETED
        assert refreshed.amount_count == 1


def test_upload_validation_rejects_bad_files(monkeypatch):
    with SessionLocal() as session:
        employee = _employee(session)
        report = create_report(session, user=employee, report_date=date(2026, 1, 31))

        with pytest.raises(UnsupportedFileType):
            add_report_file(
                session,
                report=report,
                user=employee,
                filename="invoice.txt",
                content_type="text/plain",
                body=b"Total 10",
            )
        with pytest.raises(ValidationFailed):
            add_report_file(
                session,
                report=report,
                user=employee,
                filename="empty.csv",
                content_type="text/csv",
                body=b"",
            )

        monkeypatch.setattr(settings, "report_max_bytes", 8)
        with pytest.raises(FileTooLarge) as exc:
            add_report_file(
                session,
                report=report,
                user=employee,
                filename="big.csv",
                content_type="text/csv",
                body=b"Amount\n123456\n",
            )
        assert exc.value.status_code == 413

        session.refresh(report)
        assert report.status == ReportStatus.PENDING


def test_report_file_limit_is_enforced(monkeypatch):
    monkeypatch.setattr(settings, "report_max_files", 1)
    with SessionLocal() as session:
        employee = _employee(session)
        report = create_report(session, user=employee, report_date=date(2026, 1, 31))
        add_report_file(
            session,
            report=report,
            user=employee,
            filename="a.csv",
            content_type="text/csv",
            body=b"Amount\n1\n",
        )
        with pytest.raises(ValidationFailed) as exc:
            add_report_file(
                session,
                report=report,
                user=employee,
                filename="b.csv",
                content_type="text/csv",
                body=b"Amount\n2\n",
            )
        assert exc.value.detail["max_files"] == 1


def test_removing_a_file_recomputes_total_and_deletes_the_object():
    with SessionLocal() as session:
        employee = _employee(session)
        report = create_report(session, user=employee, report_date=date(2026, 1, 31))
        keep = add_report_file(
            session,
            report=report,
            user=employee,
            filename="keep.csv",
            content_type="text/csv",
            body=b"Amount\n10\n",
        )
        drop = add_report_file(
            session,
            report=report,
            user=employee,
            filename="drop.csv",
            content_type="text/csv",
            body=b"Amount\n5\n",
        )
        extract_report_file(report_file_id=str(keep.id))
        extract_report_file(report_file_id=str(drop.id))
        session.expire_all()
        drop_key = drop.storage_key

        remove_report_file(session, report=report, user=employee, report_file_id=drop.id)
        session.expire_all()

        report_row = session.scalar(select(Report).where(Report.id == report.id))
        assert report_row.total_amount == Decimal("10.00")
        assert not (get_storage()._root / drop_key).exists()


def test_reports_are_scoped_to_owner_for_users():
    from fastapi import HTTPException

    with SessionLocal() as session:
        alice = _employee(session, "alice@example.com")
        bob = _employee(session, "bob@example.com")
        manager = create_user(
            session, email="manager@example.com", password="pw", role=UserRole.MANAGER
        )
        report = create_report(session, user=alice, report_date=date(2026, 1, 31))
        create_report(session, user=bob, report_date=date(2026, 1, 31))

        assert [r.id for r in list_reports_for_user(session, user=alice)] == [report.id]
        assert len(list_reports_for_user(session, user=manager)) == 2
        assert get_report_for_user(session, report_id=report.id, user=manager).id == report.id

        with pytest.raises(HTTPException) as exc:
            get_report_for_user(session, report_id=report.id, user=bob)
        assert exc.value.status_code == 403


def test_extraction_reclaims_only_stale_processing_files():
    with SessionLocal() as session:
        employee = _employee(session)
        report = create_report(session, user=employee, report_date=date(2026, 1, 31))
        body = b"Item,Amount\nA,10\n"
        fresh = add_report_file(
            session, report=report, user=employee, filename="a.csv", content_type=None, body=body
        )
        stale = add_report_file(
            session, report=report, user=employee, filename="b.csv", content_type=None, body=body
        )
        long_ago = datetime.now(UTC) - timedelta(minutes=settings.extraction_stale_minutes + 5)
        session.execute(
            update(ReportFile)
            .where(ReportFile.id == fresh.id)
            .values(status=ReportFileStatus.PROCESSING)
        )
        session.execute(
            update(ReportFile)
            .where(ReportFile.id == stale.id)
            .values(status=ReportFileStatus.PROCESSING, updated_at=long_ago)
        )
        session.commit()

        extract_report_file(report_file_id=str(fresh.id))
        extract_report_file(report_file_id=str(stale.id))
        session.expire_all()

        statuses = {
            f.filename: f.status
            for f in session.scalars(select(ReportFile).where(ReportFile.report_id == report.id))
        }
        assert statuses == {
            "a.csv": ReportFileStatus.PROCESSING,
            "b.csv": ReportFileStatus.COMPLETED,
        }


def test_amount_beyond_storable_range_fails_only_that_file():
    with SessionLocal() as session:
        employee = _employee(session)
        report = create_report(session, user=employee, report_date=date(2026, 1, 31))
        big = add_report_file(
            session,
            report=report,
            user=employee,
            filename="big.csv",
            content_type="text/csv",
            body=b"Total Amount Charged\n" + b"9" * 27 + b"\n",
        )
        ok = add_report_file(
            session,
            report=report,
            user=employee,
            filename="ok.csv",
            content_type="text/csv",
            body=b"Item,Amount\nA,40\n",
        )

        extract_report_file(report_file_id=str(big.id))
        extract_report_file(report_file_id=str(ok.id))
        session.expire_all()

        big_row = session.get(ReportFile, big.id)
        assert big_row.status == ReportFileStatus.ERROR
        assert big_row.error_code == "MALFORMED_DOCUMENT"
        assert "big.csv" in big_row.error_message
        assert "Total Amount Charged" in big_row.error_message
        assert session.get(ReportFile, ok.id).status == ReportFileStatus.COMPLETED
        assert session.get(Report, report.id).total_amount == Decimal("40.00")


def _processing_report_with_file(session, employee):
    report = create_report(session, user=employee, report_date=date(2026, 1, 31))
    report_file = add_report_file(
        session,
        report=report,
        user=employee,
        filename="a.csv",
        content_type="text/csv",
        body=b"Item,Amount\nA,10\n",
    )
    extract_report_file(report_file_id=str(report_file.id))
    session.expire_all()
    return report, report_file.id


def test_adding_a_file_fails_once_a_concurrent_submit_froze_the_report():
    with SessionLocal() as session_a, SessionLocal() as session_b:
        employee = _employee(session_a)
        report, _ = _processing_report_with_file(session_a, employee)

        # session_a still sees the report as processing while session_b submits it.
        stale = session_a.get(Report, report.id)
        assert stale.status == ReportStatus.PROCESSING
        employee_b = session_b.get(User, employee.id)
        assert apply_action(
            session_b, report_id=report.id, actor=employee_b, action=Submit()
        ).applied

        with pytest.raises(InvalidTransition) as exc:
            add_report_file(
                session_a,
                report=stale,
                user=employee,
                filename="late.csv",
                content_type="text/csv",
                body=b"Item,Amount\nB,99\n",
            )
        assert exc.value.detail["current_status"] == "pending_approval"

        session_a.expire_all()
        files = list(session_a.scalars(select(ReportFile).where(ReportFile.report_id == report.id)))
        assert [f.filename for f in files] == ["a.csv"]
        stored = list((get_storage()._root / f"reports/{report.id}/files").iterdir())
        assert len(stored) == 1
        frozen = session_a.get(Report, report.id)
        assert frozen.status == ReportStatus.PENDING_APPROVAL
        assert frozen.total_amount == Decimal("10.00")


def test_removing_a_file_fails_once_a_concurrent_submit_froze_the_report():
    with SessionLocal() as session_a, SessionLocal() as session_b:
        employee = _employee(session_a)
        report, file_id = _processing_report_with_file(session_a, employee)

        stale = session_a.get(Report, report.id)
        assert stale.status == ReportStatus.PROCESSING
        storage_key = session_a.get(ReportFile, file_id).storage_key
        employee_b = session_b.get(User, employee.id)
        apply_action(session_b, report_id=report.id, actor=employee_b, action=Submit())

        with pytest.raises(InvalidTransition):
            remove_report_file(session_a, report=stale, user=employee, report_file_id=file_id)

        session_a.expire_all()
        assert session_a.get(ReportFile, file_id) is not None
        assert (get_storage()._root / storage_key).exists()
        assert session_a.get(Report, report.id).total_amount == Decimal("10.00")


def test_file_removed_during_extraction_is_skipped(monkeypatch):
    real_extract = extraction_service.extract
    with SessionLocal() as session:
        employee = _employee(session)
        report, keep_id = _processing_report_with_file(session, employee)
        gone = add_report_file(
            session,
            report=session.get(Report, report.id),
            user=employee,
            filename="gone.csv",
            content_type="text/csv",
            body=b"Item,Amount\nB,5\n",
        )
        report_id, gone_id, employee_id = report.id, gone.id, employee.id

        def _extract_while_owner_removes_file(body, file_name):
            with SessionLocal() as other:
                remove_report_file(
                    other,
                    report=other.get(Report, report_id),
                    user=other.get(User, employee_id),
                    report_file_id=gone_id,
                )
            return real_extract(body, file_name)

        monkeypatch.setattr(extraction_service, "extract", _extract_while_owner_removes_file)
        extract_report_file(report_file_id=str(gone_id))

        session.expire_all()
        assert session.get(ReportFile, gone_id) is None
        assert session.get(ReportFile, keep_id).status == ReportFileStatus.COMPLETED
        assert session.get(Report, report_id).total_amount == Decimal("10.00")
