from __future__ import annotations

from collections import defaultdict
from typing import Any, Dict, List

from pms_automation.agents.contracts import AgentInput, AgentOutput, KeyData, MonthSummary, SourceSummary

TOP_SOURCES = 10


def aggregate_key_data(records: List[Dict[str, Any]]) -> KeyData:
    """Monthly referral/production rollup plus ranked referral sources."""
    months: Dict[str, MonthSummary] = {}
    source_referrals: Dict[str, int] = defaultdict(int)
    source_production: Dict[str, float] = defaultdict(float)
    total_referrals = 0
    total_production = 0.0

    for rec in records:
        month_key = str(rec.get("date") or "")[:7]
        count = int(rec.get("patient_count") or 0)
        amount = float(rec.get("production_amount") or 0)
        kind = rec.get("referral_type")

        month = months.setdefault(month_key, MonthSummary(month=month_key))
        if kind == "self_referral":
            month.selfReferrals += count
        elif kind == "doctor_referral":
            month.doctorReferrals += count
        month.totalReferrals += count
        month.productionTotal = round(month.productionTotal + amount, 2)

        total_referrals += count
        total_production += amount

        source = rec.get("referral_source")
        if source:
            source_referrals[source] += count
            source_production[source] += amount

    ranked = sorted(source_referrals.items(), key=lambda kv: (-kv[1], kv[0]))[:TOP_SOURCES]
    sources = [
        SourceSummary(
            rank=i,
            name=name,
            referrals=referrals,
            production=round(source_production[name], 2),
            percentage=round(100 * referrals / total_referrals, 2) if total_referrals else 0.0,
        )
        for i, (name, referrals) in enumerate(ranked, start=1)
    ]

    return KeyData(
        months=[months[k] for k in sorted(months)],
        sources=sources,
        totals={"totalReferrals": total_referrals, "totalProduction": round(total_production, 2)},
        recordCount=len(records),
    )


async def data_fetch(inputs: Dict[str, Any], ctx: Dict[str, Any]) -> Dict[str, Any]:
    data = AgentInput.model_validate(inputs)
    if not data.records:
        return AgentOutput(success=False, error="no PMS records to analyze").model_dump()
    key_data = aggregate_key_data(data.records)
    return AgentOutput(payload=key_data.model_dump()).model_dump()
