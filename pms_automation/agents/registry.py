from __future__ import annotations
from typing import Any, Awaitable, Callable, Dict

from pms_automation.domain.status import MonthlyAgentKey

AgentFn = Callable[[Dict[str, Any], Dict[str, Any]], Awaitable[Dict[str, Any]]]

class AgentRegistry:
    def __init__(self) -> None:
        self._agents: Dict[MonthlyAgentKey, AgentFn] = {}

    def register(self, key: MonthlyAgentKey, fn: AgentFn) -> None:
        self._agents[MonthlyAgentKey(key)] = fn

    def get(self, key: MonthlyAgentKey) -> AgentFn:
        try:
            fn = self._agents.get(MonthlyAgentKey(key))
        except ValueError:
            fn = None
        if fn is None:
            raise KeyError(f"agent not registered: {key}")
        return fn

    def keys(self) -> list[MonthlyAgentKey]:
        return list(self._agents)
