"""Parallel worker admission control."""

from __future__ import annotations

import logging
import threading
from datetime import UTC, datetime
from pathlib import Path
from typing import Callable, Optional

from pydantic import BaseModel, Field

from overseer.core.exceptions import LimitExceededError
from overseer.core.models import ActiveAgent
from overseer.storage.json_store import JsonDocument

logger = logging.getLogger("overseer.safety.admission")


class AgentRegistry(BaseModel):
    """Persisted shape of ``safety/agents.json``."""
    agents: dict[str, ActiveAgent] = Field(default_factory=dict)


class AdmissionController:
    """Tracks active workers against a fixed concurrency ceiling."""

    def __init__(
        self,
        safety_dir: Path,
        max_parallel_agents: int = 5,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.max_parallel_agents = max_parallel_agents
        self._clock = clock or (lambda: datetime.now(UTC))
        self._lock = threading.RLock()
        self._document: JsonDocument[AgentRegistry] = JsonDocument(
            safety_dir / "agents.json", AgentRegistry,
        )
        self._registry = self._document.load() or AgentRegistry()

    def check_parallel_agents(self) -> bool:
        with self._lock:
            return len(self._registry.agents) < self.max_parallel_agents

    def register_agent(
        self,
        agent_id: str,
        agent_type: str,
        task_id: Optional[str] = None,
    ) -> ActiveAgent:
        """Admit a worker. Re-registering a known id returns the existing record."""
        with self._lock:
            existing = self._registry.agents.get(agent_id)
            if existing is not None:
                return existing.model_copy()

            if len(self._registry.agents) >= self.max_parallel_agents:
                logger.warning(
                    "Admission refused for %s: %d/%d agents active",
                    agent_id, len(self._registry.agents), self.max_parallel_agents,
                )
                raise LimitExceededError(
                    "max_parallel_agents",
                    f"Maximum parallel agents ({self.max_parallel_agents}) reached",
                )

            agent = ActiveAgent(
                agent_id=agent_id,
                agent_type=agent_type,
                started_at=self._clock(),
                task_id=task_id,
            )
            self._registry.agents[agent_id] = agent
            self._document.save(self._registry)
            count = len(self._registry.agents)

        logger.info("Agent registered: %s (%s) [%d/%d]", agent_id, agent_type, count, self.max_parallel_agents)
        return agent.model_copy()

    def unregister_agent(self, agent_id: str) -> bool:
        """Remove a worker. Returns False (not an error) for unknown ids."""
        with self._lock:
            if self._registry.agents.pop(agent_id, None) is None:
                return False
            self._document.save(self._registry)
        logger.info("Agent unregistered: %s", agent_id)
        return True

    def get_active_agent_count(self) -> int:
        with self._lock:
            return len(self._registry.agents)

    def list_active_agents(self) -> list[ActiveAgent]:
        with self._lock:
            agents = [a.model_copy() for a in self._registry.agents.values()]
        return sorted(agents, key=lambda a: a.started_at)
