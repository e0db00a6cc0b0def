"""
Agent store - persistence for agent records, custody bindings, vault
share ledgers, lifecycle state and the append-only trade log.

InMemoryStore backs tests and dry runs; JsonFileStore keeps the same data
in JSON files under the data directory.
"""
import asyncio
import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from .errors import UnknownAgentError
from .schemas import (
    Agent,
    AgentStatus,
    CustodyBinding,
    LifecycleState,
    TradeLog,
    VaultShares,
)

logger = logging.getLogger("fleet_trader.store")


class AgentStore(ABC):
    """Async keyed store used by every orchestrator component."""

    @abstractmethod
    async def get_agent(self, agent_id: str) -> Optional[Agent]:
        ...

    @abstractmethod
    async def list_agents(self, status: Optional[AgentStatus] = None) -> List[Agent]:
        ...

    @abstractmethod
    async def save_agent(self, agent: Agent) -> Agent:
        ...

    @abstractmethod
    async def append_trade_log(self, log: TradeLog) -> TradeLog:
        ...

    @abstractmethod
    async def trade_logs(self, agent_id: str, limit: Optional[int] = None) -> List[TradeLog]:
        """Trade logs for an agent, newest first."""

    @abstractmethod
    async def get_custody_binding(self, agent_id: str) -> Optional[CustodyBinding]:
        ...

    @abstractmethod
    async def save_custody_binding(self, binding: CustodyBinding) -> None:
        ...

    @abstractmethod
    async def get_vault_shares(self, agent_id: str) -> Optional[VaultShares]:
        ...

    @abstractmethod
    async def save_vault_shares(self, shares: VaultShares) -> None:
        ...

    @abstractmethod
    async def get_lifecycle_state(self, agent_id: str) -> Optional[LifecycleState]:
        ...

    @abstractmethod
    async def save_lifecycle_state(self, state: LifecycleState) -> None:
        ...

    async def require_agent(self, agent_id: str) -> Agent:
        agent = await self.get_agent(agent_id)
        if agent is None:
            raise UnknownAgentError(agent_id)
        return agent

    async def update_agent(self, agent_id: str, **changes: Any) -> Agent:
        """Apply field changes to an agent record and persist it."""
        agent = await self.require_agent(agent_id)
        data = agent.model_dump()
        data.update(changes)
        return await self.save_agent(Agent.model_validate(data))

    async def find_agent_by_approval(self, approval_id: str) -> Optional[Agent]:
        for agent in await self.list_agents():
            if agent.pending_approval and agent.pending_approval.id == approval_id:
                return agent
        return None

    async def count_executed_since(self, agent_id: str, since: datetime) -> int:
        logs = await self.trade_logs(agent_id)
        return sum(1 for log in logs if log.executed and log.timestamp >= since)

    async def get_trade_log(self, agent_id: str, trade_id: str) -> Optional[TradeLog]:
        for log in await self.trade_logs(agent_id):
            if log.id == trade_id:
                return log
        return None

    async def is_trade_executed(self, agent_id: str, trade_id: str) -> bool:
        """True if the log executed itself or a later log executed it on its behalf."""
        for log in await self.trade_logs(agent_id):
            if log.executed and trade_id in (log.id, log.source_trade_id):
                return True
        return False


class InMemoryStore(AgentStore):
    """Dictionary-backed store. Returns copies so callers never share state."""

    def __init__(self):
        self._agents: Dict[str, Agent] = {}
        self._bindings: Dict[str, CustodyBinding] = {}
        self._shares: Dict[str, VaultShares] = {}
        self._states: Dict[str, LifecycleState] = {}
        self._trades: List[TradeLog] = []

    async def get_agent(self, agent_id: str) -> Optional[Agent]:
        agent = self._agents.get(agent_id)
        return agent.model_copy(deep=True) if agent else None

    async def list_agents(self, status: Optional[AgentStatus] = None) -> List[Agent]:
        return [
            a.model_copy(deep=True)
            for a in self._agents.values()
            if status is None or a.status == status
        ]

    async def save_agent(self, agent: Agent) -> Agent:
        self._agents[agent.id] = agent.model_copy(deep=True)
        await self._persist_agents()
        return agent

    async def append_trade_log(self, log: TradeLog) -> TradeLog:
        self._trades.append(log.model_copy(deep=True))
        await self._persist_trade(log)
        return log

    async def trade_logs(self, agent_id: str, limit: Optional[int] = None) -> List[TradeLog]:
        logs = [t for t in reversed(self._trades) if t.agent_id == agent_id]
        if limit is not None:
            logs = logs[:limit]
        return [t.model_copy(deep=True) for t in logs]

    async def get_custody_binding(self, agent_id: str) -> Optional[CustodyBinding]:
        return self._bindings.get(agent_id)

    async def save_custody_binding(self, binding: CustodyBinding) -> None:
        self._bindings[binding.agent_id] = binding
        await self._persist_bindings()

    async def get_vault_shares(self, agent_id: str) -> Optional[VaultShares]:
        shares = self._shares.get(agent_id)
        return shares.model_copy() if shares else None

    async def save_vault_shares(self, shares: VaultShares) -> None:
        self._shares[shares.agent_id] = shares.model_copy()
        await self._persist_shares()

    async def get_lifecycle_state(self, agent_id: str) -> Optional[LifecycleState]:
        state = self._states.get(agent_id)
        return state.model_copy(deep=True) if state else None

    async def save_lifecycle_state(self, state: LifecycleState) -> None:
        self._states[state.agent_id] = state.model_copy(deep=True)
        await self._persist_states()

    # Persistence hooks, no-ops in memory.

    async def _persist_agents(self) -> None:
        pass

    async def _persist_trade(self, log: TradeLog) -> None:
        pass

    async def _persist_bindings(self) -> None:
        pass

    async def _persist_shares(self) -> None:
        pass

    async def _persist_states(self) -> None:
        pass


class JsonFileStore(InMemoryStore):
    """
    JSON file persistence under a data directory:

        agents.json, custody.json, vault_shares.json, lifecycle.json
        trades.jsonl (append-only)

    File writes run in a worker thread and are serialized by one lock.
    """

    def __init__(self, data_dir: str):
        super().__init__()
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self._write_lock = asyncio.Lock()
        self._load()

    def _path(self, name: str) -> Path:
        return self.data_dir / name

    def _read_json(self, name: str) -> Dict[str, Any]:
        path = self._path(name)
        if not path.exists():
            return {}
        try:
            with open(path, "r") as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to read {path}: {e}")
            raise

    def _load(self) -> None:
        for agent_id, raw in self._read_json("agents.json").items():
            self._agents[agent_id] = Agent.model_validate(raw)
        for agent_id, raw in self._read_json("custody.json").items():
            self._bindings[agent_id] = CustodyBinding.model_validate(raw)
        for agent_id, raw in self._read_json("vault_shares.json").items():
            self._shares[agent_id] = VaultShares.model_validate(raw)
        for agent_id, raw in self._read_json("lifecycle.json").items():
            self._states[agent_id] = LifecycleState.model_validate(raw)

        trades_path = self._path("trades.jsonl")
        if trades_path.exists():
            with open(trades_path, "r") as f:
                for line in f:
                    line = line.strip()
                    if line:
                        self._trades.append(TradeLog.model_validate_json(line))

        logger.info(
            f"Loaded {len(self._agents)} agents and {len(self._trades)} trade logs from {self.data_dir}"
        )

    def _write_json(self, name: str, payload: Dict[str, Any]) -> None:
        path = self._path(name)
        tmp = path.with_suffix(".tmp")
        with open(tmp, "w") as f:
            json.dump(payload, f, indent=2, default=str)
        tmp.replace(path)

    def _append_line(self, name: str, line: str) -> None:
        with open(self._path(name), "a") as f:
            f.write(line + "\n")

    async def _dump(self, name: str, items: Dict[str, Any]) -> None:
        payload = {key: value.model_dump(mode="json") for key, value in items.items()}
        async with self._write_lock:
            await asyncio.to_thread(self._write_json, name, payload)

    async def _persist_agents(self) -> None:
        await self._dump("agents.json", self._agents)

    async def _persist_trade(self, log: TradeLog) -> None:
        async with self._write_lock:
            await asyncio.to_thread(self._append_line, "trades.jsonl", log.model_dump_json())

    async def _persist_bindings(self) -> None:
        await self._dump("custody.json", self._bindings)

    async def _persist_shares(self) -> None:
        await self._dump("vault_shares.json", self._shares)

    async def _persist_states(self) -> None:
        await self._dump("lifecycle.json", self._states)
