from __future__ import annotations

import enum
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class AutomationState(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    AWAITING_APPROVAL = "awaiting_approval"


class StepKey(str, enum.Enum):
    FILE_UPLOAD = "file_upload"
    PMS_PARSER = "pms_parser"
    ADMIN_APPROVAL = "admin_approval"
    CLIENT_APPROVAL = "client_approval"
    MONTHLY_AGENTS = "monthly_agents"
    TASK_CREATION = "task_creation"
    COMPLETE = "complete"


class StepState(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class MonthlyAgentKey(str, enum.Enum):
    DATA_FETCH = "data_fetch"
    SUMMARY_AGENT = "summary_agent"
    REFERRAL_ENGINE = "referral_engine"
    OPPORTUNITY_AGENT = "opportunity_agent"
    CRO_OPTIMIZER = "cro_optimizer"


class ApprovalKind(str, enum.Enum):
    ADMIN = "admin"
    CLIENT = "client"


STEP_ORDER: List[StepKey] = list(StepKey)

STEP_LABELS: Dict[StepKey, str] = {
    StepKey.FILE_UPLOAD: "File Upload",
    StepKey.PMS_PARSER: "PMS Parser",
    StepKey.ADMIN_APPROVAL: "Admin Approval",
    StepKey.CLIENT_APPROVAL: "Client Approval",
    StepKey.MONTHLY_AGENTS: "Monthly Agents",
    StepKey.TASK_CREATION: "Task Creation",
    StepKey.COMPLETE: "Complete",
}

AGENT_LABELS: Dict[MonthlyAgentKey, str] = {
    MonthlyAgentKey.DATA_FETCH: "Data Fetch",
    MonthlyAgentKey.SUMMARY_AGENT: "Summary Agent",
    MonthlyAgentKey.REFERRAL_ENGINE: "Referral Engine",
    MonthlyAgentKey.OPPORTUNITY_AGENT: "Opportunity Agent",
    MonthlyAgentKey.CRO_OPTIMIZER: "CRO Optimizer",
}


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class StepDetail(_CamelModel):
    status: StepState = StepState.PENDING
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None

    # monthly_agents only
    current_agent: Optional[MonthlyAgentKey] = None
    agents_completed: Optional[List[MonthlyAgentKey]] = None
    sub_step: Optional[str] = None


class AgentResult(_CamelModel):
    success: bool
    result_id: Optional[str] = None
    error: Optional[str] = None


class TasksCreated(_CamelModel):
    user: int = 0
    alloro: int = 0
    total: int = 0


class AutomationSummary(_CamelModel):
    tasks_created: TasksCreated = Field(default_factory=TasksCreated)
    agent_results: Dict[MonthlyAgentKey, AgentResult] = Field(default_factory=dict)
    duration: Optional[str] = None


class AutomationStatusDetail(_CamelModel):
    status: AutomationState = AutomationState.PENDING
    current_step: StepKey = StepKey.FILE_UPLOAD
    current_sub_step: Optional[str] = None
    message: str = ""
    progress: int = 0
    steps: Dict[StepKey, StepDetail] = Field(default_factory=dict)
    summary: Optional[AutomationSummary] = None
    started_at: datetime
    completed_at: Optional[datetime] = None
    error: Optional[str] = None

    def step(self, key: StepKey) -> StepDetail:
        return self.steps[key]

    def to_json(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
