from pms_automation.agents.builtin import data_fetch
from pms_automation.agents.llm_adapter import make_llm_agent
from pms_automation.agents.registry import AgentRegistry
from pms_automation.domain.status import MonthlyAgentKey


def build_agent_registry() -> AgentRegistry:
    reg = AgentRegistry()
    reg.register(MonthlyAgentKey.DATA_FETCH, data_fetch)  # deterministic rollup
    for key in (
        MonthlyAgentKey.SUMMARY_AGENT,
        MonthlyAgentKey.REFERRAL_ENGINE,
        MonthlyAgentKey.OPPORTUNITY_AGENT,
        MonthlyAgentKey.CRO_OPTIMIZER,
    ):
        reg.register(key, make_llm_agent(key))
    return reg
