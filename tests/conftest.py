import asyncio
import pathlib
import sys
from typing import Any, Dict, List

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from pms_automation.agents.builtin import data_fetch
from pms_automation.agents.registry import AgentRegistry
from pms_automation.db.models import JobSource
from pms_automation.db.session import init_models, make_session_factory
from pms_automation.domain.job_service import create_job
from pms_automation.domain.status import AutomationStatusDetail, MonthlyAgentKey
from pms_automation.main import create_app
from pms_automation.runtime.locks import JobLocks
from pms_automation.runtime.orchestrator import FAN_OUT_AGENTS
from pms_automation.runtime.runner import PipelineRunner
from pms_automation.runtime.store import load_job, read_status

SAMPLE_CSV = (
    "date,referral_type,referral_source,patient_count,production_amount\n"
    "2024-01-05,doctor_referral,Dr. Smith,3,1500.50\n"
    "2024-01-12,self_referral,Google,2,800\n"
    "2024-02-03,doctor_referral,Dr. Jones,1,400\n"
)

MANUAL_ROWS = [
    {"date": "2024-03-01", "referral_type": "doctor_referral", "referral_source": "Dr. Smith", "patient_count": 4},
    {"date": "2024-03-09", "referral_type": "self_referral", "production_amount": 250},
]


class ScriptedAgents:
    """Fake sub-agents. Tests flip ``failures``/``delays`` between runs."""

    def __init__(self) -> None:
        self.calls: List[MonthlyAgentKey] = []
        self.failures: Dict[MonthlyAgentKey, str] = {}
        self.delays: Dict[MonthlyAgentKey, float] = {}
        self.tasks: Dict[MonthlyAgentKey, List[Dict[str, Any]]] = {
            MonthlyAgentKey.REFERRAL_ENGINE: [
                {"title": "Thank Dr. Smith for referrals", "category": "USER"},
            ],
            MonthlyAgentKey.CRO_OPTIMIZER: [
                {"title": "Add referral form to homepage", "description": "above the fold", "category": "ALLORO"},
                {"title": "Shorten contact form"},
            ],
        }

    def _wrap(self, key: MonthlyAgentKey, real=None):
        async def _run(inputs: Dict[str, Any], ctx: Dict[str, Any]) -> Dict[str, Any]:
            self.calls.append(key)
            if key in self.delays:
                await asyncio.sleep(self.delays[key])
            if key in self.failures:
                return {"success": False, "error": self.failures[key]}
            if real is not None:
                return await real(inputs, ctx)
            return {
                "success": True,
                "payload": {"summary": f"{key.value} ok", "findings": [], "tasks": self.tasks.get(key, [])},
            }

        return _run

    def registry(self) -> AgentRegistry:
        reg = AgentRegistry()
        reg.register(MonthlyAgentKey.DATA_FETCH, self._wrap(MonthlyAgentKey.DATA_FETCH, data_fetch))
        for key in FAN_OUT_AGENTS:
            reg.register(key, self._wrap(key))
        return reg


class PipelineEnv:
    def __init__(self, engine, agents: ScriptedAgents) -> None:
        self.engine = engine
        self.agents = agents
        self.session_factory = make_session_factory(engine)
        self.locks = JobLocks()
        self.runner = self.make_runner()

    def make_runner(self, **kwargs) -> PipelineRunner:
        kwargs.setdefault("agent_timeout_s", 5.0)
        return PipelineRunner(
            session_factory=self.session_factory,
            agents=self.agents.registry(),
            locks=self.locks,
            **kwargs,
        )

    async def setup(self) -> None:
        await init_models(self.engine)

    async def create_csv(self, text: str = SAMPLE_CSV, **kwargs) -> str:
        async with self.session_factory() as session:
            job = await create_job(
                session,
                source=JobSource.CSV,
                organization_id=kwargs.pop("organization_id", "org-1"),
                csv_text=text,
                filename="referrals.csv",
                **kwargs,
            )
            return job.id

    async def create_manual(self, rows=None, **kwargs) -> str:
        async with self.session_factory() as session:
            job = await create_job(
                session,
                source=JobSource.MANUAL,
                organization_id=kwargs.pop("organization_id", "org-1"),
                manual_data=list(rows or MANUAL_ROWS),
                **kwargs,
            )
            return job.id

    async def status(self, job_id: str) -> AutomationStatusDetail:
        async with self.session_factory() as session:
            return read_status(await load_job(session, job_id))

    async def job(self, job_id: str):
        async with self.session_factory() as session:
            return await load_job(session, job_id)


@pytest.fixture
def engine(tmp_path):
    return create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", poolclass=NullPool)


@pytest.fixture
def agents():
    return ScriptedAgents()


@pytest.fixture
def env(engine, agents):
    return PipelineEnv(engine, agents)


@pytest.fixture
def client(engine, agents):
    app = create_app(engine=engine, agents=agents.registry())
    with TestClient(app) as c:
        yield c
