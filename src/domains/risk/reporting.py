"""Risk statistics, audit reports and compliance exports."""

import asyncio
import csv
import io
import json
from collections import Counter
from datetime import datetime

import structlog

from .errors import InvalidInputError
from .interfaces import RiskRecordPersistence
from .models import (
    AuditReport,
    ExportFormat,
    ReviewStatus,
    RiskFactorCount,
    RiskLevel,
    RiskRecord,
    RiskRecordFilter,
    RiskStatistics,
)

logger = structlog.get_logger()

TOP_RISK_FACTOR_LIMIT = 10

CSV_COLUMNS = [
    "transaction_id",
    "risk_score",
    "risk_level",
    "is_flagged",
    "flag_reason",
    "review_status",
    "overridden",
    "triggered_rules",
    "evaluation_count",
    "created_at",
    "updated_at",
]

_JSON_FIELDS = {
    "id",
    "transaction_id",
    "user_id",
    "risk_score",
    "risk_level",
    "is_flagged",
    "flag_reason",
    "review_status",
    "reviewed_by",
    "reviewed_at",
    "admin_notes",
    "auto_processed",
    "overridden",
    "overridden_by",
    "override_reason",
    "override_level",
    "overridden_at",
    "risk_factors",
    "evaluation_history",
    "velocity_data",
    "device_context",
    "created_at",
    "updated_at",
}


class AuditReporter:
    """Read-only aggregates and exports over stored risk records."""

    def __init__(self, records: RiskRecordPersistence) -> None:
        self._records = records

    async def statistics(self) -> RiskStatistics:
        """Point-in-time counts over all risk records."""
        count = self._records.count
        (
            total_flagged,
            pending,
            approved,
            rejected,
            escalated,
            *level_counts,
        ) = await asyncio.gather(
            count(RiskRecordFilter(is_flagged=True)),
            count(RiskRecordFilter(review_status=ReviewStatus.PENDING_REVIEW)),
            count(RiskRecordFilter(review_status=ReviewStatus.APPROVED)),
            count(RiskRecordFilter(review_status=ReviewStatus.REJECTED)),
            count(RiskRecordFilter(review_status=ReviewStatus.ESCALATED)),
            *(count(RiskRecordFilter(risk_level=level)) for level in RiskLevel),
        )
        average = await self._records.average("risk_score")

        return RiskStatistics(
            total_flagged=total_flagged,
            pending_review=pending,
            approved=approved,
            rejected=rejected,
            escalated=escalated,
            average_risk_score=average,
            counts_by_level=dict(zip(RiskLevel, level_counts, strict=True)),
        )

    async def generate_audit_report(self, date_from: datetime, date_to: datetime) -> AuditReport:
        """Summarize records created in ``[date_from, date_to)``."""
        records = await self._records_in_range(date_from, date_to)

        total = len(records)
        factor_counts: Counter[str] = Counter()
        for record in records:
            factor_counts.update(f.rule for f in record.risk_factors)

        # Counter.most_common keeps first-seen order among equal counts
        top_factors = [
            RiskFactorCount(rule=rule, count=n)
            for rule, n in factor_counts.most_common(TOP_RISK_FACTOR_LIMIT)
        ]

        report = AuditReport(
            date_from=date_from,
            date_to=date_to,
            total_evaluations=total,
            flagged_count=sum(1 for r in records if r.is_flagged),
            reviewed_count=sum(1 for r in records if r.review_status != ReviewStatus.PENDING_REVIEW),
            auto_blocked_count=sum(
                1
                for r in records
                if r.is_flagged
                and not r.auto_processed
                and r.review_status == ReviewStatus.PENDING_REVIEW
            ),
            average_risk_score=sum(r.risk_score for r in records) / total if total else 0.0,
            top_risk_factors=top_factors,
        )
        logger.info(
            "risk_audit_report_generated",
            date_from=date_from.isoformat(),
            date_to=date_to.isoformat(),
            total_evaluations=report.total_evaluations,
            flagged_count=report.flagged_count,
        )
        return report

    async def export_evaluation_logs(
        self,
        date_from: datetime,
        date_to: datetime,
        fmt: ExportFormat | str = ExportFormat.JSON,
    ) -> str:
        """Serialize records created in ``[date_from, date_to)``, newest first."""
        try:
            export_format = ExportFormat(fmt)
        except ValueError:
            raise InvalidInputError(f"Unsupported export format: {fmt!r}") from None

        records = await self._records_in_range(date_from, date_to)
        if export_format == ExportFormat.CSV:
            payload = _to_csv(records)
        else:
            payload = json.dumps(
                [r.model_dump(mode="json", include=_JSON_FIELDS) for r in records],
                indent=2,
            )

        logger.info(
            "risk_evaluation_logs_exported",
            format=export_format.value,
            record_count=len(records),
        )
        return payload

    async def _records_in_range(self, date_from: datetime, date_to: datetime) -> list[RiskRecord]:
        if date_from >= date_to:
            raise InvalidInputError("date_from must be earlier than date_to")
        return await self._records.list_all(
            RiskRecordFilter(created_from=date_from, created_to=date_to),
            newest_first=True,
        )


def _to_csv(records: list[RiskRecord]) -> str:
    output = io.StringIO()
    writer = csv.DictWriter(output, fieldnames=CSV_COLUMNS)
    writer.writeheader()
    for r in records:
        writer.writerow(
            {
                "transaction_id": r.transaction_id,
                "risk_score": r.risk_score,
                "risk_level": r.risk_level.value,
                "is_flagged": r.is_flagged,
                "flag_reason": r.flag_reason or "",
                "review_status": r.review_status.value,
                "overridden": r.overridden,
                "triggered_rules": ";".join(f.rule for f in r.risk_factors),
                "evaluation_count": len(r.evaluation_history),
                "created_at": r.created_at.isoformat(),
                "updated_at": r.updated_at.isoformat(),
            }
        )
    return output.getvalue()
