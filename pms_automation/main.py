from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

from fastapi import FastAPI  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncEngine  # noqa: E402

from pms_automation.agents.init_agents import build_agent_registry  # noqa: E402
from pms_automation.agents.registry import AgentRegistry  # noqa: E402
from pms_automation.api.routes_health import router as health_router  # noqa: E402
from pms_automation.api.routes_jobs import router as jobs_router  # noqa: E402
from pms_automation.core.config import settings  # noqa: E402
from pms_automation.core.logging import configure_logging  # noqa: E402
from pms_automation.db.session import engine as default_engine, init_models, make_session_factory  # noqa: E402
from pms_automation.runtime.runner import PipelineRunner  # noqa: E402


def create_app(*, engine: Optional[AsyncEngine] = None, agents: Optional[AgentRegistry] = None) -> FastAPI:
    logger = configure_logging(settings.log_level)
    bind = engine or default_engine
    session_factory = make_session_factory(bind)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await init_models(bind)
        logger.info("pms automation ready (%s)", settings.app_env)
        yield

    app = FastAPI(title="PMS Automation Service", version="0.1.0", lifespan=lifespan)
    app.state.session_factory = session_factory
    app.state.runner = PipelineRunner(
        session_factory=session_factory,
        agents=agents or build_agent_registry(),
    )
    app.include_router(health_router)
    app.include_router(jobs_router)
    return app


app = create_app()
