"""In-memory repositories for agents, conversations and execution sessions.

Each repository keeps a dict keyed by id and, when given a JsonCollectionStore,
writes every change through to disk.
"""

import threading
from datetime import UTC, datetime
from pathlib import Path

from lumi.models.agent import Agent
from lumi.models.conversation import Conversation
from lumi.models.session import ExecutionSession
from lumi.services.storage import JsonCollectionStore
from lumi.utils.logging import get_logger

logger = get_logger(__name__)

AGENTS_FILE = "agents.json"
CONVERSATIONS_FILE = "conversations.json"
SESSIONS_FILE = "sessions.json"


class AgentRepository:
    """Agents by id."""

    def __init__(self, store: JsonCollectionStore[Agent] | None = None):
        """Initialize the repository.

        Args:
            store: Optional file store; existing agents are loaded from it
        """
        self.store = store
        self._agents: dict[str, Agent] = {}
        self._lock = threading.Lock()
        if store is not None:
            self._agents = {agent.id: agent for agent in store.load()}
            logger.info(f"Loaded {len(self._agents)} agents from {store.path}")

    def add(self, agent: Agent) -> Agent:
        with self._lock:
            self._agents[agent.id] = agent
            self._persist()
        return agent

    def get(self, agent_id: str) -> Agent | None:
        return self._agents.get(agent_id)

    def list_all(self) -> list[Agent]:
        return sorted(self._agents.values(), key=lambda agent: agent.created_at)

    def get_many(self, agent_ids: list[str]) -> list[Agent]:
        """Resolve ids in the given order, skipping unknown ones."""
        return [self._agents[agent_id] for agent_id in agent_ids if agent_id in self._agents]

    def update(self, agent: Agent) -> Agent:
        agent.updated_at = datetime.now(UTC)
        return self.add(agent)

    def delete(self, agent_id: str) -> bool:
        with self._lock:
            if self._agents.pop(agent_id, None) is None:
                return False
            self._persist()
        return True

    def _persist(self) -> None:
        if self.store is not None:
            self.store.save(list(self._agents.values()))


class ConversationRepository:
    """Conversations by id, most recently updated first when listed."""

    def __init__(self, store: JsonCollectionStore[Conversation] | None = None):
        self.store = store
        self._conversations: dict[str, Conversation] = {}
        self._lock = threading.Lock()
        if store is not None:
            self._conversations = {conversation.id: conversation for conversation in store.load()}
            logger.info(f"Loaded {len(self._conversations)} conversations from {store.path}")

    def create(self, participant_ids: list[str], title: str | None = None) -> Conversation:
        """Create and store a new conversation.

        Args:
            participant_ids: Agents taking part, in roster order
            title: Optional display title

        Returns:
            The new conversation
        """
        conversation = Conversation(participant_ids=list(participant_ids), title=title)
        self.save(conversation)
        logger.info(f"Created conversation {conversation.id} with {len(participant_ids)} participants")
        return conversation

    def get(self, conversation_id: str) -> Conversation | None:
        return self._conversations.get(conversation_id)

    def list_all(self) -> list[Conversation]:
        return sorted(self._conversations.values(), key=lambda c: c.updated_at, reverse=True)

    def save(self, conversation: Conversation) -> Conversation:
        with self._lock:
            self._conversations[conversation.id] = conversation
            if self.store is not None:
                self.store.save(list(self._conversations.values()))
        return conversation

    async def save_async(self, conversation: Conversation) -> Conversation:
        """Like `save`, with the file write moved off the event loop."""
        with self._lock:
            self._conversations[conversation.id] = conversation
            snapshot = list(self._conversations.values())
        if self.store is not None:
            await self.store.save_async(snapshot)
        return conversation

    def delete(self, conversation_id: str) -> bool:
        with self._lock:
            if self._conversations.pop(conversation_id, None) is None:
                return False
            if self.store is not None:
                self.store.save(list(self._conversations.values()))
        return True


class SessionRepository:
    """Execution sessions; the store holds every session kept in memory."""

    def __init__(self, store: JsonCollectionStore[ExecutionSession] | None = None):
        self.store = store
        self._sessions: dict[str, ExecutionSession] = {}
        self._lock = threading.Lock()
        if store is not None:
            self._sessions = {session.id: session for session in store.load()}

    def create(self, session: ExecutionSession) -> ExecutionSession:
        return self._put(session)

    def update(self, session: ExecutionSession) -> ExecutionSession:
        return self._put(session)

    def get(self, session_id: str) -> ExecutionSession | None:
        return self._sessions.get(session_id)

    def get_for_agent(self, agent_id: str) -> list[ExecutionSession]:
        """Sessions of one agent, newest first."""
        sessions = [s for s in self._sessions.values() if s.agent_id == agent_id]
        return sorted(sessions, key=lambda s: s.started_at, reverse=True)

    def get_recent(self, limit: int = 20) -> list[ExecutionSession]:
        return sorted(self._sessions.values(), key=lambda s: s.started_at, reverse=True)[:limit]

    def __len__(self) -> int:
        return len(self._sessions)

    async def save_async(self, session: ExecutionSession) -> ExecutionSession:
        with self._lock:
            self._sessions[session.id] = session
            snapshot = list(self._sessions.values())
        if self.store is not None:
            await self.store.save_async(snapshot)
        return session

    def _put(self, session: ExecutionSession) -> ExecutionSession:
        with self._lock:
            self._sessions[session.id] = session
            if self.store is not None:
                self.store.save(list(self._sessions.values()))
        return session


def open_repositories(
    data_dir: Path | None,
) -> tuple[AgentRepository, ConversationRepository, SessionRepository]:
    """Build the three repositories, file-backed when a data directory is given."""
    if data_dir is None:
        return AgentRepository(), ConversationRepository(), SessionRepository()
    return (
        AgentRepository(JsonCollectionStore(data_dir, AGENTS_FILE, Agent)),
        ConversationRepository(JsonCollectionStore(data_dir, CONVERSATIONS_FILE, Conversation)),
        SessionRepository(JsonCollectionStore(data_dir, SESSIONS_FILE, ExecutionSession)),
    )
