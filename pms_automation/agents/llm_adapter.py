from __future__ import annotations

from typing import Any, Dict

from pms_automation.agents.contracts import AgentInput, AgentOutput
from pms_automation.agents.llm import run_analysis
from pms_automation.agents.registry import AgentFn
from pms_automation.domain.status import MonthlyAgentKey


class AgentExecutionError(RuntimeError):
    pass


def make_llm_agent(agent: MonthlyAgentKey) -> AgentFn:
    async def _run(inputs: Dict[str, Any], ctx: Dict[str, Any]) -> Dict[str, Any]:
        data = AgentInput.model_validate(inputs)
        if not data.data:
            raise AgentExecutionError(f"{agent.value} requires data_fetch output")

        try:
            payload = await run_analysis(agent=agent, data=data.data)
        except Exception as e:
            raise AgentExecutionError(f"{agent.value} failed: {type(e).__name__}: {e}") from e

        return AgentOutput(payload=payload).model_dump()

    _run.__name__ = f"{agent.value}_llm"
    return _run
