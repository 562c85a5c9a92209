from __future__ import annotations
from typing import Any, Dict, List, Literal, Optional, Union
from pydantic import BaseModel, Field

TaskCategoryName = Literal["USER", "ALLORO"]

class AgentInput(BaseModel):
    job_id: str
    organization_id: str
    records: List[Dict[str, Any]] = Field(default_factory=list)
    # data_fetch output; empty for data_fetch itself
    data: Dict[str, Any] = Field(default_factory=dict)

class AgentOutput(BaseModel):
    success: bool = True
    result_id: Optional[str] = None
    error: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)

class ProposedTask(BaseModel):
    title: str
    description: Optional[str] = None
    category: TaskCategoryName = "ALLORO"

class AnalysisPayload(BaseModel):
    summary: str = ""
    findings: List[str] = Field(default_factory=list)
    tasks: List[ProposedTask] = Field(default_factory=list)

class MonthSummary(BaseModel):
    month: str
    selfReferrals: int = 0
    doctorReferrals: int = 0
    totalReferrals: int = 0
    productionTotal: float = 0.0

class SourceSummary(BaseModel):
    rank: int
    name: str
    referrals: int
    production: float
    percentage: float

class KeyData(BaseModel):
    months: List[MonthSummary] = Field(default_factory=list)
    sources: List[SourceSummary] = Field(default_factory=list)
    totals: Dict[str, Union[int, float]] = Field(default_factory=dict)
    recordCount: int = 0
