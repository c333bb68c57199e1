"""Unit tests for risk statistics, audit reports and exports."""

import csv
import io
import json
from datetime import UTC, datetime, timedelta

import pytest

from src.domains.risk.errors import InvalidInputError
from src.domains.risk.models import (
    DeviceContext,
    EvaluationLogEntry,
    ExportFormat,
    ReviewStatus,
    RiskFactor,
    RiskLevel,
    RiskRecord,
    VelocityData,
)
from src.domains.risk.reporting import CSV_COLUMNS, AuditReporter

NOW = datetime(2026, 1, 15, 14, 0, 0, tzinfo=UTC)
DAY_START = datetime(2026, 1, 15, tzinfo=UTC)
DAY_END = DAY_START + timedelta(days=1)


def _factor(rule: str, score: int = 25) -> RiskFactor:
    return RiskFactor(rule=rule, score=score, reason=f"{rule} fired")


def _make_record(index: int, rules: list[str], **kwargs) -> RiskRecord:
    factors = [_factor(r) for r in rules]
    score = sum(f.score for f in factors)
    defaults = {
        "id": f"risk-{index}",
        "transaction_id": f"txn-{index}",
        "user_id": "user-1",
        "risk_score": score,
        "risk_level": RiskLevel.HIGH if score >= 70 else RiskLevel.LOW,
        "is_flagged": score >= 70,
        "risk_factors": factors,
        "evaluation_history": [
            EvaluationLogEntry(
                evaluated_at=NOW,
                previous_score=0,
                new_score=score,
                factors=factors,
                triggered_rules=rules,
            )
        ],
        "created_at": NOW - timedelta(hours=index),
        "updated_at": NOW - timedelta(hours=index),
    }
    defaults.update(kwargs)
    return RiskRecord(**defaults)


async def _seed(record_persistence) -> None:
    await record_persistence.create(_make_record(1, ["A", "B", "C"]))
    await record_persistence.create(
        _make_record(2, ["A", "B", "C"], review_status=ReviewStatus.APPROVED, auto_processed=True)
    )
    await record_persistence.create(
        _make_record(3, ["A", "C", "D"], review_status=ReviewStatus.REJECTED)
    )
    await record_persistence.create(_make_record(4, ["A"]))
    # created the day before
    await record_persistence.create(_make_record(20, ["Z", "Z2", "Z3"]))


class TestStatistics:
    @pytest.mark.asyncio
    async def test_counts(self, record_persistence):
        await _seed(record_persistence)
        stats = await AuditReporter(record_persistence).statistics()

        assert stats.total_flagged == 4
        assert stats.pending_review == 3
        assert stats.approved == 1
        assert stats.rejected == 1
        assert stats.escalated == 0
        assert stats.average_risk_score == (75 * 4 + 25) / 5
        assert stats.counts_by_level[RiskLevel.HIGH] == 4
        assert stats.counts_by_level[RiskLevel.LOW] == 1
        assert stats.counts_by_level[RiskLevel.CRITICAL] == 0

    @pytest.mark.asyncio
    async def test_empty(self, record_persistence):
        stats = await AuditReporter(record_persistence).statistics()
        assert stats.total_flagged == 0
        assert stats.average_risk_score == 0.0


class TestAuditReport:
    @pytest.mark.asyncio
    async def test_report_over_range(self, record_persistence):
        await _seed(record_persistence)
        report = await AuditReporter(record_persistence).generate_audit_report(DAY_START, DAY_END)

        assert report.total_evaluations == 4
        assert report.flagged_count == 3
        assert report.reviewed_count == 2
        # flagged, still pending and never cleared for auto-processing
        assert report.auto_blocked_count == 1
        assert report.average_risk_score == (75 * 3 + 25) / 4
        assert [(f.rule, f.count) for f in report.top_risk_factors] == [
            ("A", 4),
            ("C", 3),
            ("B", 2),
            ("D", 1),
        ]

    @pytest.mark.asyncio
    async def test_top_factors_capped_at_ten(self, record_persistence):
        rules = [f"RULE_{i}" for i in range(15)]
        await record_persistence.create(_make_record(1, rules))
        report = await AuditReporter(record_persistence).generate_audit_report(DAY_START, DAY_END)

        assert len(report.top_risk_factors) == 10

    @pytest.mark.asyncio
    async def test_empty_range(self, record_persistence):
        report = await AuditReporter(record_persistence).generate_audit_report(DAY_START, DAY_END)

        assert report.total_evaluations == 0
        assert report.average_risk_score == 0.0
        assert report.top_risk_factors == []

    @pytest.mark.asyncio
    async def test_inverted_range_rejected(self, record_persistence):
        with pytest.raises(InvalidInputError):
            await AuditReporter(record_persistence).generate_audit_report(DAY_END, DAY_START)


class TestExport:
    @pytest.mark.asyncio
    async def test_json_export_newest_first(self, record_persistence):
        await _seed(record_persistence)
        payload = await AuditReporter(record_persistence).export_evaluation_logs(
            DAY_START, DAY_END, ExportFormat.JSON
        )

        rows = json.loads(payload)
        assert [r["transaction_id"] for r in rows] == ["txn-1", "txn-2", "txn-3", "txn-4"]
        assert rows[0]["risk_factors"][0]["rule"] == "A"
        assert rows[0]["evaluation_history"][0]["new_score"] == 75
        assert "version" not in rows[0]

    @pytest.mark.asyncio
    async def test_json_export_matches_report_count(self, record_persistence):
        await _seed(record_persistence)
        reporter = AuditReporter(record_persistence)

        report = await reporter.generate_audit_report(DAY_START, DAY_END)
        rows = json.loads(await reporter.export_evaluation_logs(DAY_START, DAY_END, "json"))

        assert len(rows) == report.total_evaluations == 4

    @pytest.mark.asyncio
    async def test_json_export_keeps_audit_snapshots(self, record_persistence):
        await record_persistence.create(
            _make_record(
                1,
                ["A", "B", "C"],
                velocity_data=VelocityData(count_1h=6, amount_1h=1200.0),
                device_context=DeviceContext(device_key="device-abc", is_new_device=True),
                admin_notes="Called customer",
                auto_processed=True,
                overridden=True,
                override_level=RiskLevel.LOW,
                overridden_at=NOW,
            )
        )
        payload = await AuditReporter(record_persistence).export_evaluation_logs(
            DAY_START, DAY_END
        )

        row = json.loads(payload)[0]
        assert row["velocity_data"]["count_1h"] == 6
        assert row["device_context"]["is_new_device"] is True
        assert row["admin_notes"] == "Called customer"
        assert row["auto_processed"] is True
        assert row["override_level"] == "LOW"
        assert datetime.fromisoformat(row["overridden_at"]) == NOW

    @pytest.mark.asyncio
    async def test_csv_export_has_header_and_one_row_per_record(self, record_persistence):
        await _seed(record_persistence)
        payload = await AuditReporter(record_persistence).export_evaluation_logs(
            DAY_START, DAY_END, "csv"
        )

        rows = list(csv.DictReader(io.StringIO(payload)))
        assert payload.splitlines()[0] == ",".join(CSV_COLUMNS)
        assert len(rows) == 4
        assert rows[0]["transaction_id"] == "txn-1"
        assert rows[0]["triggered_rules"] == "A;B;C"
        assert rows[0]["evaluation_count"] == "1"
        assert rows[1]["review_status"] == "APPROVED"

    @pytest.mark.asyncio
    async def test_csv_quotes_embedded_commas(self, record_persistence):
        await record_persistence.create(
            _make_record(1, ["A", "B", "C"], flag_reason="Critical risk factors: A, B")
        )
        payload = await AuditReporter(record_persistence).export_evaluation_logs(
            DAY_START, DAY_END, ExportFormat.CSV
        )

        rows = list(csv.DictReader(io.StringIO(payload)))
        assert rows[0]["flag_reason"] == "Critical risk factors: A, B"

    @pytest.mark.asyncio
    async def test_unknown_format(self, record_persistence):
        with pytest.raises(InvalidInputError):
            await AuditReporter(record_persistence).export_evaluation_logs(
                DAY_START, DAY_END, "xml"
            )
