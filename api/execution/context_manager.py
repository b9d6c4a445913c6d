"""
In-memory execution context store.

One ``ExecutionContext`` per pipeline invocation holds the strategy, step
results, a deduplicated entity cache, cross-step intermediate data and a
bounded conversation history. Writes to a context are serialized by its own
``asyncio.Lock``; contexts are evicted by age (see ``cleanup_old_contexts``),
so callers must not treat the store as durable.
"""

import asyncio
import re
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Optional, Set

import structlog

from api.schemas.strategy import QueryType, StepResult, Strategy
from libs.common.settings import get_settings

logger = structlog.get_logger(__name__)

MAX_CONVERSATION_HISTORY = 10
ENTITY_KINDS = ("people", "meetings", "documents", "topics")

TOPIC_PATTERNS = [
    re.compile(r"\b(standup|scrum|retrospective|planning|review|demo)\b", re.IGNORECASE),
    re.compile(r"\b(project|feature|bug|issue|task|epic)\b", re.IGNORECASE),
    re.compile(r"\b(design|architecture|technical|development|engineering)\b", re.IGNORECASE),
    re.compile(r"\b(marketing|sales|customer|user|client)\b", re.IGNORECASE),
    re.compile(r"\b(quarterly|monthly|weekly|daily|sprint)\b", re.IGNORECASE),
    re.compile(r"\b(budget|finance|revenue|cost|pricing)\b", re.IGNORECASE),
    re.compile(r"\b(hiring|onboarding|training|performance)\b", re.IGNORECASE),
]


def extract_topics(text: Any) -> List[str]:
    """Keyword topics found in ``text``, lowercased and deduplicated in order."""
    if not text or not isinstance(text, str):
        return []
    topics: List[str] = []
    for pattern in TOPIC_PATTERNS:
        for match in pattern.findall(text):
            topic = match.lower()
            if topic not in topics:
                topics.append(topic)
    return topics


@dataclass
class EntityCache:
    people: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    meetings: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    documents: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    topics: Set[str] = field(default_factory=set)

    def counts(self) -> Dict[str, int]:
        return {
            "peopleCount": len(self.people),
            "meetingsCount": len(self.meetings),
            "documentsCount": len(self.documents),
            "topicsCount": len(self.topics),
        }


@dataclass
class ExecutionContext:
    """Mutable state of one query execution."""

    execution_id: str
    strategy: Strategy
    user_context: Dict[str, Any]
    started_at: float
    status: str = "initialized"
    finalized_at: Optional[float] = None
    step_results: Dict[int, StepResult] = field(default_factory=dict)
    intermediate_data: Dict[str, Any] = field(default_factory=dict)
    entity_cache: EntityCache = field(default_factory=EntityCache)
    conversation_history: Deque[Dict[str, Any]] = field(
        default_factory=lambda: deque(maxlen=MAX_CONVERSATION_HISTORY)
    )
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @property
    def completed_steps(self) -> int:
        return len(self.step_results)

    @property
    def duration_ms(self) -> Optional[int]:
        if self.finalized_at is None:
            return None
        return int((self.finalized_at - self.started_at) * 1000)


class ExecutionContextStore:
    """
    Keeps execution contexts for in-flight and recently finished queries.

    Operations on an unknown execution id log a warning and do nothing;
    getters return ``None``. A context may already have been swept.
    """

    def __init__(
        self,
        max_context_age_seconds: Optional[float] = None,
        max_contexts: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ):
        settings = get_settings()
        self.max_context_age_seconds = (
            max_context_age_seconds if max_context_age_seconds is not None else settings.max_context_age_seconds
        )
        self.max_contexts = max_contexts if max_contexts is not None else settings.max_contexts
        self.clock = clock
        self._contexts: Dict[str, ExecutionContext] = {}
        self._sweeper: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return len(self._contexts)

    def _get(self, execution_id: str, operation: str) -> Optional[ExecutionContext]:
        context = self._contexts.get(execution_id)
        if context is None:
            logger.warning("Execution context not found", execution_id=execution_id, operation=operation)
        return context

    def get_execution_context(self, execution_id: str) -> Optional[ExecutionContext]:
        return self._contexts.get(execution_id)

    async def initialize(
        self,
        execution_id: str,
        strategy: Strategy,
        user_context: Optional[Dict[str, Any]] = None,
    ) -> ExecutionContext:
        user_context = dict(user_context or {})
        context = ExecutionContext(
            execution_id=execution_id,
            strategy=strategy,
            user_context=user_context,
            started_at=self.clock(),
        )
        for entry in user_context.get("conversation_history") or []:
            context.conversation_history.append(entry)

        self._contexts[execution_id] = context
        logger.info("Execution context initialized", execution_id=execution_id, total_steps=len(strategy.steps))

        if len(self._contexts) > self.max_contexts:
            self.cleanup_old_contexts()
        return context

    def set_strategy(self, execution_id: str, strategy: Strategy) -> None:
        context = self._get(execution_id, "set_strategy")
        if context is not None:
            context.strategy = strategy

    async def update_step_result(self, execution_id: str, step_number: int, result: StepResult) -> None:
        """Record a step result and merge its entities. Safe to re-deliver."""
        context = self._get(execution_id, "update_step_result")
        if context is None:
            return

        async with context.lock:
            context.status = "running"
            context.step_results[step_number] = result
            if result.success:
                self._merge_entities(context, result)
                self._update_intermediate_data(context, step_number, result)

        logger.debug("Step result recorded", execution_id=execution_id, step_number=step_number, success=result.success)

    def _merge_entities(self, context: ExecutionContext, result: StepResult) -> None:
        cache = context.entity_cache
        query_type = result.query_type

        for item in result.items:
            if not isinstance(item, dict):
                continue

            if item.get("email"):
                cache.people[item["email"]] = {
                    "email": item["email"],
                    "name": item.get("name") or item.get("displayName"),
                    "department": item.get("department"),
                    "role": item.get("role") or item.get("title"),
                    "lastSeen": result.timestamp,
                }

            organizer = item.get("organizer")
            if isinstance(organizer, dict) and organizer.get("email"):
                cache.people[organizer["email"]] = {
                    "email": organizer["email"],
                    "name": organizer.get("name") or organizer.get("displayName"),
                    "department": organizer.get("department"),
                    "role": organizer.get("role"),
                    "lastSeen": result.timestamp,
                }

            for attendee in item.get("attendees") or []:
                if isinstance(attendee, dict) and attendee.get("email"):
                    cache.people[attendee["email"]] = {
                        "email": attendee["email"],
                        "name": attendee.get("name") or attendee.get("displayName"),
                        "lastSeen": result.timestamp,
                    }

            item_id = item.get("id")
            if item_id and query_type == QueryType.FIND_DOCUMENTS:
                cache.documents[item_id] = {
                    "id": item_id,
                    "title": item.get("title") or item.get("name"),
                    "type": item.get("mimeType") or item.get("type"),
                    "url": item.get("url"),
                    "lastSeen": result.timestamp,
                }
            elif item_id and (query_type == QueryType.FIND_MEETINGS or item.get("title")):
                cache.meetings[item_id] = {
                    "id": item_id,
                    "title": item.get("title"),
                    "startTime": item.get("startTime"),
                    "endTime": item.get("endTime"),
                    "organizer": organizer,
                    "attendeeCount": len(item.get("attendees") or []),
                    "lastSeen": result.timestamp,
                }

            cache.topics.update(extract_topics(item.get("title")))
            cache.topics.update(extract_topics(item.get("description")))

    def _update_intermediate_data(self, context: ExecutionContext, step_number: int, result: StepResult) -> None:
        rows = result.items
        data = context.intermediate_data
        data[f"step_{step_number}"] = {
            "queryType": result.query_type.value,
            "resultCount": len(rows),
            "results": rows,
            "parameters": result.parameters,
            "timestamp": result.timestamp,
        }

        dict_rows = [row for row in rows if isinstance(row, dict)]
        if result.query_type == QueryType.FIND_MEETINGS:
            data["latest_meetings"] = rows
            data["meeting_ids"] = [row["id"] for row in dict_rows if row.get("id")]
        elif result.query_type == QueryType.GET_PARTICIPANTS:
            data["latest_participants"] = rows
            data["participant_emails"] = [row["email"] for row in dict_rows if row.get("email")]
        elif result.query_type == QueryType.FIND_FREQUENT_COLLABORATORS:
            data["latest_collaborators"] = rows
            data["collaborator_emails"] = [row["email"] for row in dict_rows if row.get("email")]

    def get_step_result(self, execution_id: str, step_number: int) -> Optional[StepResult]:
        context = self._contexts.get(execution_id)
        if context is None:
            return None
        return context.step_results.get(step_number)

    def get_step_results(self, execution_id: str) -> List[StepResult]:
        """All recorded results ordered by step number."""
        context = self._contexts.get(execution_id)
        if context is None:
            return []
        return [context.step_results[n] for n in sorted(context.step_results)]

    def get_intermediate_data(self, execution_id: str, key: str) -> Any:
        context = self._contexts.get(execution_id)
        if context is None:
            return None
        return context.intermediate_data.get(key)

    def get_cached_entities(self, execution_id: str, kind: str) -> Optional[List[Any]]:
        context = self._contexts.get(execution_id)
        if context is None or kind not in ENTITY_KINDS:
            return None
        if kind == "topics":
            return sorted(context.entity_cache.topics)
        return list(getattr(context.entity_cache, kind).values())

    async def add_conversation_context(self, execution_id: str, entry: Dict[str, Any]) -> None:
        """Append a conversation entry; only the last 10 are kept."""
        context = self._get(execution_id, "add_conversation_context")
        if context is None:
            return
        async with context.lock:
            context.conversation_history.append({**entry, "timestamp": datetime.now(timezone.utc).isoformat()})

    def get_conversation_history(self, execution_id: str) -> List[Dict[str, Any]]:
        context = self._contexts.get(execution_id)
        return list(context.conversation_history) if context else []

    def build_context_summary(self, execution_id: str) -> Optional[Dict[str, Any]]:
        """Progress, entity counts and the last three step results."""
        context = self._contexts.get(execution_id)
        if context is None:
            return None

        total_steps = len(context.strategy.steps)
        recent = []
        for step_number in sorted(context.step_results, reverse=True)[:3]:
            result = context.step_results[step_number]
            recent.append({
                "step": step_number,
                "queryType": result.query_type.value,
                "description": result.description,
                "success": result.success,
                "resultCount": len(result.items),
            })

        return {
            "executionId": execution_id,
            "originalQuery": context.user_context.get("original_query") or context.strategy.analysis,
            "progress": {
                "completedSteps": context.completed_steps,
                "totalSteps": total_steps,
                "percentage": round(context.completed_steps / total_steps * 100) if total_steps else 0,
            },
            "entities": context.entity_cache.counts(),
            "recentResults": recent,
        }

    async def finalize_execution(self, execution_id: str) -> None:
        context = self._get(execution_id, "finalize_execution")
        if context is None:
            return
        async with context.lock:
            context.status = "finalized"
            context.finalized_at = self.clock()
        logger.info("Execution context finalized", execution_id=execution_id, duration_ms=context.duration_ms)

    def cleanup_old_contexts(self) -> int:
        """Drop contexts older than the max age, measured from finalization (or start)."""
        cutoff = self.clock() - self.max_context_age_seconds
        expired = [
            execution_id
            for execution_id, context in self._contexts.items()
            if (context.finalized_at if context.finalized_at is not None else context.started_at) < cutoff
        ]
        for execution_id in expired:
            del self._contexts[execution_id]

        if expired:
            logger.info("Cleaned up old execution contexts", count=len(expired), remaining=len(self._contexts))
        return len(expired)

    def get_statistics(self) -> Dict[str, Any]:
        contexts = list(self._contexts.values())
        finalized = [c for c in contexts if c.status == "finalized"]

        return {
            "totalContexts": len(contexts),
            "activeContexts": len(contexts) - len(finalized),
            "finalizedContexts": len(finalized),
            "averageStepsPerExecution": (
                sum(c.completed_steps for c in finalized) / len(finalized) if finalized else 0
            ),
            "averageExecutionTime": (
                sum(c.duration_ms or 0 for c in finalized) / len(finalized) if finalized else 0
            ),
        }

    def clear(self) -> None:
        self._contexts.clear()
        logger.info("Cleared all execution contexts")

    async def run_sweeper(self, interval_seconds: float) -> None:
        """Periodically evict old contexts until cancelled."""
        while True:
            await asyncio.sleep(interval_seconds)
            self.cleanup_old_contexts()

    def start_sweeper(self, interval_seconds: Optional[float] = None) -> asyncio.Task:
        if self._sweeper is None or self._sweeper.done():
            interval = interval_seconds or get_settings().context_sweep_interval_seconds
            self._sweeper = asyncio.create_task(self.run_sweeper(interval))
            logger.info("Context sweeper started", interval_seconds=interval)
        return self._sweeper

    async def stop_sweeper(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None
        logger.info("Context sweeper stopped")


_context_store: Optional[ExecutionContextStore] = None


def get_context_store() -> ExecutionContextStore:
    """Get or create the global execution context store."""
    global _context_store
    if _context_store is None:
        _context_store = ExecutionContextStore()
    return _context_store
